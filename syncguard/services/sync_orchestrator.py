"""
Sync Orchestrator.

Coordinating entry point for every sync trigger: scheduled sweeps, manual
"sync now" requests and inbound webhook notifications. Each invocation runs
CheckBreaker -> CheckToken -> Execute -> RecordMetric -> ReportOutcome ->
RecomputeSchedule, short-circuiting to the last three steps on any failure,
so every attempt ends in one metric and one schedule recomputation.
"""

import asyncio
import time
from collections.abc import Callable, Coroutine
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import (
    bind_sync_context,
    clear_sync_context,
    get_logger,
)
from syncguard.jobs.sweep_runner import SweepJobError, SweepRunner
from syncguard.models.domain.collaborators import ProviderError, ProviderErrorClass, SyncExecutor
from syncguard.models.domain.sync_domain import (
    Decision,
    SkipReason,
    SyncKey,
    SyncMetric,
    SyncOutcome,
    SyncResultStatus,
    SyncType,
    WebhookNotification,
)
from syncguard.repositories.sync_state_repository import SyncStateRepository
from syncguard.services.adaptive_sync_scheduler import AdaptiveSyncScheduler
from syncguard.services.circuit_breaker_manager import CircuitBreakerManager
from syncguard.services.infrastructure.key_locks import KeyLockManager, LockNotAcquiredError
from syncguard.services.sync_metrics_recorder import SyncMetricsRecorder
from syncguard.services.token_health_monitor import TokenCheckOutcome, TokenHealthMonitor
from syncguard.services.webhook_subscription_manager import (
    NotificationDisposition,
    WebhookSubscriptionManager,
)
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)

LOCK_NAMESPACE = "inflight"

TRIGGER_ADAPTIVE_SYNC = "adaptive_sync"
TRIGGER_TOKEN_REFRESH = "token_refresh"
TRIGGER_WEBHOOK_RENEWAL = "webhook_renewal"
TRIGGER_WEBHOOK_HEALTH = "webhook_health"

ERROR_CLASS_DEADLINE = ProviderErrorClass.TRANSIENT.value
ERROR_CLASS_EXECUTION = "execution_error"
ERROR_CLASS_INTERNAL = "internal_error"
ERROR_CLASS_CANCELLED = "cancelled"

# Manual and initial syncs do not feed the no-change streak
CHANGE_TRACKED_SYNC_TYPES = frozenset({SyncType.INCREMENTAL, SyncType.WEBHOOK_TRIGGERED})


@dataclass(slots=True)
class _Attempt:
    """Mutable record of how far one invocation got."""

    decision: Decision | None = None
    items_synced: int = 0
    succeeded: bool = False
    skip_reason: SkipReason | None = None
    error_class: str | None = None
    error_message: str | None = None
    counts_toward_breaker: bool = False
    auth_failure: bool = False

    def fail(self, error_class: str, message: str, *, counted: bool) -> None:
        self.error_class = error_class
        self.error_message = message
        self.counts_toward_breaker = counted


class SyncOrchestrator:
    """Composes breaker, token health, executor, metrics and scheduler per key."""

    def __init__(
        self,
        executor: SyncExecutor,
        breaker: CircuitBreakerManager,
        token_monitor: TokenHealthMonitor,
        webhooks: WebhookSubscriptionManager,
        scheduler: AdaptiveSyncScheduler,
        metrics: SyncMetricsRecorder,
        locks: KeyLockManager,
        repository: SyncStateRepository | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.executor = executor
        self.breaker = breaker
        self.token_monitor = token_monitor
        self.webhooks = webhooks
        self.scheduler = scheduler
        self.metrics = metrics
        self.locks = locks
        self.repository = repository or SyncStateRepository()
        self.config = config or settings
        self.clock = clock

        self._accepting = True
        self._background: set[asyncio.Task] = set()
        self._queued_webhook_keys: dict[SyncKey, asyncio.Task] = {}
        self._webhook_semaphore = asyncio.Semaphore(max(1, self.config.WEBHOOK_MAX_CONCURRENCY))

        self.sweeps: dict[str, SweepRunner] = {
            TRIGGER_ADAPTIVE_SYNC: SweepRunner(
                TRIGGER_ADAPTIVE_SYNC,
                timedelta(minutes=self.config.ADAPTIVE_SYNC_INTERVAL_MINUTES),
                config=self.config,
                clock=clock,
            ),
            TRIGGER_TOKEN_REFRESH: SweepRunner(
                TRIGGER_TOKEN_REFRESH,
                timedelta(hours=self.config.TOKEN_REFRESH_INTERVAL_HOURS),
                config=self.config,
                clock=clock,
            ),
            TRIGGER_WEBHOOK_RENEWAL: SweepRunner(
                TRIGGER_WEBHOOK_RENEWAL,
                timedelta(hours=self.config.WEBHOOK_RENEWAL_INTERVAL_HOURS),
                config=self.config,
                clock=clock,
            ),
            TRIGGER_WEBHOOK_HEALTH: SweepRunner(
                TRIGGER_WEBHOOK_HEALTH,
                timedelta(hours=self.config.WEBHOOK_HEALTH_INTERVAL_HOURS),
                config=self.config,
                clock=clock,
            ),
        }
        self._tick_handlers: dict[str, Callable[[], Coroutine[Any, Any, dict]]] = {
            TRIGGER_ADAPTIVE_SYNC: self._sweep_adaptive_sync,
            TRIGGER_TOKEN_REFRESH: self._sweep_token_refresh,
            TRIGGER_WEBHOOK_RENEWAL: self._sweep_webhook_renewal,
            TRIGGER_WEBHOOK_HEALTH: self._sweep_webhook_health,
        }

    @property
    def is_shutting_down(self) -> bool:
        return not self._accepting

    # ------------------------------------------------------------------
    # Single invocation
    # ------------------------------------------------------------------

    async def run_sync(
        self, key: SyncKey, sync_type: SyncType, *, wait_seconds: float | None = None
    ) -> SyncOutcome:
        """
        Run one sync attempt for a key.

        Never raises for sync failures; the outcome carries what happened.
        A trigger arriving while the key is already syncing is rejected with
        skip_reason already_in_flight and leaves the schedule to the running
        attempt. With wait_seconds the trigger queues behind the running
        attempt instead and is rejected only if the wait runs out.
        """
        started_at = self.clock()
        started = time.monotonic()

        if not self._accepting:
            return await self._record_rejection(key, sync_type, started_at, SkipReason.SHUTTING_DOWN)

        acquired = False
        try:
            async with self.locks.hold(
                key.lock_name(LOCK_NAMESPACE),
                blocking=wait_seconds is not None,
                timeout=wait_seconds,
            ):
                acquired = True
                if sync_type == SyncType.WEBHOOK_TRIGGERED:
                    # Pushes from here on need a fresh read of the provider
                    self._dequeue_webhook(key)
                return await self._run_pipeline(key, sync_type, started_at, started)
        except LockNotAcquiredError:
            if acquired:
                raise
            logger.info(
                "Sync already in flight, rejecting duplicate trigger",
                sync_type=sync_type.value,
                waited=wait_seconds is not None,
                **key.log_fields(),
            )
            return await self._record_rejection(key, sync_type, started_at, SkipReason.ALREADY_IN_FLIGHT)
        except asyncio.CancelledError:
            if not acquired and not self._accepting:
                # Shutdown cancelled a trigger still queued behind the running attempt
                await asyncio.shield(
                    self._record_rejection(key, sync_type, started_at, SkipReason.SHUTTING_DOWN)
                )
            raise

    async def _run_pipeline(
        self, key: SyncKey, sync_type: SyncType, started_at: datetime, started: float
    ) -> SyncOutcome:
        bind_sync_context(key.user_id, key.integration_type.value, sync_type=sync_type.value)
        attempt = _Attempt()
        stage = "check_breaker"
        cancelled = False

        try:
            attempt.decision = await self.breaker.allow(key)
            if not attempt.decision.proceed:
                attempt.skip_reason = attempt.decision.reason
            else:
                stage = "check_token"
                check = await self.token_monitor.get_usable_token(key)
                if not check.usable:
                    attempt.skip_reason = (
                        SkipReason.TOKEN_INVALID
                        if check.outcome == TokenCheckOutcome.INVALID
                        else SkipReason.TOKEN_EXPIRED
                    )
                    attempt.error_message = check.reason
                else:
                    stage = "execute"
                    result = await asyncio.wait_for(
                        self.executor.run(
                            key.user_id,
                            key.integration_type,
                            sync_type,
                            access_token=check.token.access_token,
                        ),
                        timeout=self.config.SYNC_DEADLINE_SECONDS,
                    )
                    attempt.succeeded = True
                    attempt.items_synced = result.items_synced

        except ProviderError as e:
            attempt.fail(e.error_class.value, str(e), counted=e.counts_toward_breaker)
            attempt.auth_failure = e.error_class == ProviderErrorClass.AUTH_INVALID
        except TimeoutError:
            attempt.fail(
                ERROR_CLASS_DEADLINE,
                f"Sync exceeded {self.config.SYNC_DEADLINE_SECONDS}s deadline",
                counted=stage == "execute",
            )
        except asyncio.CancelledError:
            cancelled = True
            attempt.fail(ERROR_CLASS_CANCELLED, f"Cancelled during {stage}", counted=False)
        except Exception as e:
            # Executor errors (malformed payloads etc.) halt the key like provider errors;
            # our own failures before the provider call do not
            counted = stage == "execute"
            attempt.fail(
                ERROR_CLASS_EXECUTION if counted else ERROR_CLASS_INTERNAL,
                f"{type(e).__name__}: {e}",
                counted=counted,
            )
            logger.error(
                "Sync pipeline step failed",
                stage=stage,
                error=str(e),
                error_type=type(e).__name__,
                **key.log_fields(),
            )

        finalizer = asyncio.create_task(
            self._finalize(key, sync_type, attempt, started_at, started)
        )
        self._track(finalizer)
        try:
            outcome = await asyncio.shield(finalizer)
        finally:
            clear_sync_context()

        if cancelled:
            raise asyncio.CancelledError()
        return outcome

    async def _finalize(
        self,
        key: SyncKey,
        sync_type: SyncType,
        attempt: _Attempt,
        started_at: datetime,
        started: float,
    ) -> SyncOutcome:
        """RecordMetric -> ReportOutcome -> RecomputeSchedule. Each step isolated."""
        duration_ms = int((time.monotonic() - started) * 1000)
        result = SyncResultStatus.SUCCESS if attempt.succeeded else SyncResultStatus.FAILURE

        await self.metrics.record(
            SyncMetric(
                user_id=key.user_id,
                integration_type=key.integration_type,
                sync_type=sync_type,
                result=result,
                duration_ms=duration_ms,
                items_synced=attempt.items_synced,
                error_class=attempt.error_class,
                skip_reason=attempt.skip_reason,
                error_message=attempt.error_message,
                timestamp=started_at,
            )
        )

        try:
            await self._report_outcome(key, attempt)
        except Exception as e:
            logger.error(
                "Failed to report sync outcome",
                error=str(e),
                error_type=type(e).__name__,
                **key.log_fields(),
            )

        next_sync_at = None
        try:
            next_sync_at = await self.scheduler.next_sync_time(
                key,
                attempted_at=started_at,
                changes_detected=attempt.items_synced > 0
                if attempt.succeeded and sync_type in CHANGE_TRACKED_SYNC_TYPES
                else None,
            )
        except Exception as e:
            logger.error(
                "Failed to recompute sync schedule",
                error=str(e),
                error_type=type(e).__name__,
                **key.log_fields(),
            )

        return SyncOutcome(
            user_id=key.user_id,
            integration_type=key.integration_type,
            sync_type=sync_type,
            result=result,
            skip_reason=attempt.skip_reason,
            error_class=attempt.error_class,
            items_synced=attempt.items_synced,
            duration_ms=duration_ms,
            next_sync_at=next_sync_at,
        )

    async def _report_outcome(self, key: SyncKey, attempt: _Attempt) -> None:
        if attempt.succeeded:
            await self.breaker.record_success(key)
            return

        if attempt.counts_toward_breaker:
            await self.breaker.record_failure(key, attempt.error_class)
            return

        if attempt.auth_failure:
            await self.token_monitor.report_auth_failure(key, attempt.error_class)

        # A probe that never reached the provider proves nothing either way
        if attempt.decision is not None and attempt.decision.is_probe:
            await self.breaker.release_probe(key)

    async def _record_rejection(
        self, key: SyncKey, sync_type: SyncType, started_at: datetime, reason: SkipReason
    ) -> SyncOutcome:
        await self.metrics.record(
            SyncMetric(
                user_id=key.user_id,
                integration_type=key.integration_type,
                sync_type=sync_type,
                result=SyncResultStatus.FAILURE,
                skip_reason=reason,
                timestamp=started_at,
            )
        )
        return SyncOutcome(
            user_id=key.user_id,
            integration_type=key.integration_type,
            sync_type=sync_type,
            result=SyncResultStatus.FAILURE,
            skip_reason=reason,
        )

    # ------------------------------------------------------------------
    # Inbound surfaces
    # ------------------------------------------------------------------

    async def on_tick(self, trigger_name: str) -> dict:
        """Entry point for the job scheduler's periodic triggers."""
        name = trigger_name.strip().lower()
        if name not in self._tick_handlers:
            raise ValueError(
                f"Unknown trigger '{trigger_name}'. "
                f"Available triggers: {', '.join(sorted(self._tick_handlers))}"
            )
        if not self._accepting:
            logger.info("Ignoring tick during shutdown", trigger=name)
            return {"job_run": name, "skipped": True, "reason": "shutting_down"}

        # Tracked so shutdown waits for the sweep's in-flight keys
        sweep = asyncio.create_task(self._tick_handlers[name]())
        self._track(sweep)
        return await sweep

    async def on_webhook_notification(
        self, key: SyncKey, payload: WebhookNotification
    ) -> NotificationDisposition:
        """
        Validate a push and enqueue the incremental sync it warrants.

        Returns quickly so the HTTP handler can answer within the provider's
        delivery window; the sync itself runs as a tracked background task
        behind the usual breaker and token gating.
        """
        if not self._accepting:
            return NotificationDisposition(accepted=False, should_sync=False, reason="shutting_down")

        disposition = await asyncio.wait_for(
            self.webhooks.on_notification(key, payload),
            timeout=self.config.WEBHOOK_HANDLER_TIMEOUT_SECONDS,
        )
        if not disposition.should_sync:
            return disposition

        if key in self._queued_webhook_keys:
            disposition.reason = "coalesced"
            return disposition

        task = asyncio.create_task(self._run_webhook_sync(key))
        self._queued_webhook_keys[key] = task
        self._track(task)
        return disposition

    def _dequeue_webhook(self, key: SyncKey) -> None:
        if self._queued_webhook_keys.get(key) is asyncio.current_task():
            del self._queued_webhook_keys[key]

    async def _run_webhook_sync(self, key: SyncKey) -> None:
        try:
            async with self._webhook_semaphore:
                # A push during a running sync may describe changes that sync already missed
                await self.run_sync(
                    key,
                    SyncType.WEBHOOK_TRIGGERED,
                    wait_seconds=self.config.sync_pipeline_budget_seconds(),
                )
        finally:
            self._dequeue_webhook(key)

    async def sync_now(self, key: SyncKey) -> SyncOutcome:
        """Manual "sync now"."""
        return await self.run_sync(key, SyncType.MANUAL)

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect_integration(self, key: SyncKey, expires_at: datetime | None) -> SyncOutcome:
        """First connection: start tracking, open a push channel, run the initial sync."""
        await self.token_monitor.on_grant(key, expires_at)
        await self.breaker.reset(key, reason="connected")
        await self.scheduler.initialize_schedule(key)
        await self._ensure_webhook(key)
        logger.info("Integration connected", **key.log_fields())
        return await self.run_sync(key, SyncType.INITIAL)

    async def on_reauthenticated(self, key: SyncKey, expires_at: datetime | None) -> SyncOutcome:
        """External reset after the user re-authenticates; resumes a paused key."""
        await self.token_monitor.on_reauthenticated(key, expires_at)
        await self.breaker.reset(key, reason="reauthenticated")
        await self._ensure_webhook(key)
        logger.info("Integration re-authenticated", **key.log_fields())
        return await self.run_sync(key, SyncType.INCREMENTAL)

    async def disconnect_integration(self, key: SyncKey) -> None:
        """Stop the push channel and drop all keyed state once no sync is running."""
        async with self.locks.hold(
            key.lock_name(LOCK_NAMESPACE),
            timeout=self.config.SYNC_DEADLINE_SECONDS + self.locks.acquire_timeout,
        ):
            await self.webhooks.stop(key)
            await self.repository.clear_key(key)
        logger.info("Integration disconnected", **key.log_fields())

    async def _ensure_webhook(self, key: SyncKey) -> None:
        try:
            await self.webhooks.ensure_registered(key)
        except Exception as e:
            logger.error(
                "Webhook registration failed, polling only",
                error=str(e),
                error_type=type(e).__name__,
                **key.log_fields(),
            )

    async def get_sync_status(self, key: SyncKey) -> dict:
        """Current view of a key for the status route and onboarding UI."""
        breaker = await self.breaker.get_state(key)
        token_health = await self.token_monitor.get_health(key)
        schedule = await self.scheduler.get_schedule(key)
        webhook_health = await self.webhooks.check_health(key)

        return {
            "user_id": key.user_id,
            "integration_type": key.integration_type.value,
            "connected": schedule is not None,
            "in_flight": await self.locks.is_locked(key.lock_name(LOCK_NAMESPACE)),
            "breaker_state": breaker.state.value,
            "consecutive_failures": breaker.consecutive_failures,
            "next_probe_at": breaker.next_probe_at.isoformat() if breaker.next_probe_at else None,
            "token_status": token_health.status.value if token_health else None,
            "webhook_health": webhook_health.value,
            "last_sync_at": schedule.last_sync_at.isoformat()
            if schedule and schedule.last_sync_at
            else None,
            "next_sync_at": schedule.next_sync_at.isoformat()
            if schedule and schedule.next_sync_at
            else None,
            "paused_reason": schedule.paused_reason if schedule else None,
        }

    # ------------------------------------------------------------------
    # Sweeps
    # ------------------------------------------------------------------

    async def _list_keys(self, trigger_name: str, loader: Coroutine[Any, Any, list[SyncKey]]) -> list[SyncKey]:
        try:
            return await loader
        except Exception as e:
            raise SweepJobError(
                f"Failed to list keys for {trigger_name}: {e}", operation="list_keys"
            ) from e

    async def _sweep_adaptive_sync(self) -> dict:
        keys = await self._list_keys(
            TRIGGER_ADAPTIVE_SYNC, self.scheduler.get_due_keys(self.config.ADAPTIVE_SYNC_MAX_KEYS)
        )

        async def handle(key: SyncKey) -> SyncOutcome | None:
            if not self._accepting:
                return None
            return await self.run_sync(key, SyncType.INCREMENTAL)

        return await self.sweeps[TRIGGER_ADAPTIVE_SYNC].run(keys, handle)

    async def _sweep_token_refresh(self) -> dict:
        now = self.clock()
        rows = await self._list_keys(
            TRIGGER_TOKEN_REFRESH,
            self.repository.list_token_health_for_sweep(
                stale_before=now - timedelta(hours=self.config.TOKEN_STALE_AFTER_HOURS),
                expiring_before=now + self.token_monitor.lead_window,
                limit=self.config.ADAPTIVE_SYNC_MAX_KEYS,
            ),
        )
        return await self.sweeps[TRIGGER_TOKEN_REFRESH].run(
            [row.key for row in rows], self.token_monitor.sweep_key
        )

    async def _sweep_webhook_renewal(self) -> dict:
        keys: list[SyncKey] = []
        for integration_type in self.webhooks.providers:
            keys.extend(
                await self._list_keys(
                    TRIGGER_WEBHOOK_RENEWAL, self.repository.list_schedule_keys(integration_type)
                )
            )
        return await self.sweeps[TRIGGER_WEBHOOK_RENEWAL].run(keys, self.webhooks.renew_if_expiring)

    async def _sweep_webhook_health(self) -> dict:
        subscriptions = await self._list_keys(
            TRIGGER_WEBHOOK_HEALTH, self.repository.list_subscriptions()
        )
        return await self.sweeps[TRIGGER_WEBHOOK_HEALTH].run(
            [subscription.key for subscription in subscriptions], self.webhooks.run_health_check
        )

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def _track(self, task: asyncio.Task) -> None:
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def shutdown(self, grace_seconds: float | None = None) -> None:
        """
        Stop accepting work, let in-flight attempts finish within the grace
        period, then cancel the rest. Cancelled attempts still record their
        metric and schedule because finalization is shielded.
        """
        grace = grace_seconds if grace_seconds is not None else self.config.SHUTDOWN_GRACE_SECONDS
        self._accepting = False

        pending = {task for task in self._background if not task.done()}
        logger.info("Sync orchestrator shutting down", in_flight_tasks=len(pending), grace_seconds=grace)
        if not pending:
            return

        _, still_running = await asyncio.wait(pending, timeout=grace)
        for task in still_running:
            task.cancel()

        if still_running:
            logger.warning("Cancelled in-flight sync tasks at shutdown", count=len(still_running))
            # Finalizers spawned by the cancellations still need to land
            await asyncio.wait(
                {task for task in self._background if not task.done()} | still_running,
                timeout=grace,
            )
