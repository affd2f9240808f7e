"""
Adaptive Sync Scheduler.

Computes when the next sync for a key should run from the persisted onboarding
window, webhook health, token health and breaker state. The interval is
derived on every recompute and never set directly.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.sync_domain import (
    CircuitBreakerState,
    FrequencyBounds,
    IntegrationType,
    SubscriptionHealth,
    SyncKey,
    SyncSchedule,
    TokenHealth,
    TokenStatus,
)
from syncguard.repositories.sync_state_repository import SyncStateRepository
from syncguard.services.infrastructure.key_locks import KeyLockManager
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)

LOCK_NAMESPACE = "schedule"


def frequency_bounds_for(integration_type: IntegrationType, config: Settings) -> FrequencyBounds:
    """Interval table for each integration. Contacts change rarely, calendars daily."""
    if integration_type == IntegrationType.CONTACTS:
        return FrequencyBounds(
            onboarding=timedelta(hours=config.CONTACTS_ONBOARDING_HOURS),
            default=timedelta(hours=config.CONTACTS_DEFAULT_HOURS),
            webhook_fallback=timedelta(hours=config.CONTACTS_WEBHOOK_FALLBACK_HOURS),
            min=timedelta(hours=config.CONTACTS_MIN_HOURS),
            max=timedelta(hours=config.CONTACTS_MAX_HOURS),
        )
    if integration_type == IntegrationType.CALENDAR:
        return FrequencyBounds(
            onboarding=timedelta(hours=config.CALENDAR_ONBOARDING_HOURS),
            default=timedelta(hours=config.CALENDAR_DEFAULT_HOURS),
            webhook_fallback=timedelta(hours=config.CALENDAR_WEBHOOK_FALLBACK_HOURS),
            min=timedelta(hours=config.CALENDAR_MIN_HOURS),
            max=timedelta(hours=config.CALENDAR_MAX_HOURS),
        )
    raise ValueError(f"Unknown integration type '{integration_type}'")


@dataclass(slots=True)
class SchedulePlan:
    next_sync_at: datetime | None
    interval: timedelta | None
    tier: str
    paused_reason: str | None = None


class AdaptiveSyncScheduler:
    """Persists next_sync_at for each connected key."""

    def __init__(
        self,
        locks: KeyLockManager,
        repository: SyncStateRepository | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.locks = locks
        self.repository = repository or SyncStateRepository()
        self.config = config or settings
        self.clock = clock

    def plan(
        self,
        key: SyncKey,
        schedule: SyncSchedule,
        now: datetime,
        breaker: CircuitBreakerState | None = None,
        token_health: TokenHealth | None = None,
        webhook_health: SubscriptionHealth = SubscriptionHealth.MISSING,
    ) -> SchedulePlan:
        """
        Pick the interval for a key. Precedence, shortest interval wins:
        onboarding, then webhook fallback when push is healthy, else default
        polling. Runs of syncs that found no changes stretch the fallback and
        default tiers; onboarding is never stretched. A tripped breaker
        multiplies the result and floors it at next_probe_at; the clamp to
        [min, max] happens before that floor.
        """
        if token_health is not None and token_health.is_invalid():
            return SchedulePlan(next_sync_at=None, interval=None, tier="paused", paused_reason="token_invalid")

        bounds = frequency_bounds_for(key.integration_type, self.config)
        token_expired = token_health is not None and token_health.status == TokenStatus.EXPIRED

        if webhook_health == SubscriptionHealth.HEALTHY:
            interval, tier = bounds.webhook_fallback, "webhook_fallback"
        else:
            interval, tier = bounds.default, "default"

        idle = schedule.idle_multiplier(
            self.config.NO_CHANGE_STRETCH_AFTER, self.config.NO_CHANGE_STRETCH_FACTOR
        )
        if idle > 1:
            interval = interval * idle
            tier = f"{tier}+idle_stretch"

        if schedule.is_onboarding(now) and not token_expired and bounds.onboarding < interval:
            interval, tier = bounds.onboarding, "onboarding"

        if token_expired:
            interval = interval * self.config.TOKEN_EXPIRED_BACKOFF_FACTOR
            tier = f"{tier}+token_backoff"

        breaker_tripped = breaker is not None and breaker.is_tripped()
        if breaker_tripped:
            interval = interval * breaker.backoff_factor()
            tier = f"{tier}+breaker_backoff"

        interval = bounds.clamp(interval)
        next_sync_at = now + interval

        if breaker_tripped and breaker.next_probe_at and next_sync_at < breaker.next_probe_at:
            next_sync_at = breaker.next_probe_at

        return SchedulePlan(next_sync_at=next_sync_at, interval=interval, tier=tier)

    async def next_sync_time(
        self,
        key: SyncKey,
        *,
        attempted_at: datetime | None = None,
        changes_detected: bool | None = None,
    ) -> datetime | None:
        """
        Recompute and persist next_sync_at for a key.

        Args:
            key: Integration key
            attempted_at: Start of the sync attempt that triggered this recompute
            changes_detected: Whether a completed scheduled sync found changes;
                None leaves the no-change streak untouched

        Returns:
            The new next_sync_at, or None when the key is paused or not connected
        """
        async with self.locks.hold(key.lock_name(LOCK_NAMESPACE)):
            schedule = await self.repository.get_schedule(key)
            if schedule is None:
                logger.debug("No schedule for key, integration not connected", **key.log_fields())
                return None

            if changes_detected is not None:
                schedule.record_changes(changes_detected)

            now = self.clock()
            breaker = await self.repository.get_breaker(key)
            token_health = await self.repository.get_token_health(key)
            subscription = await self.repository.get_subscription(key)
            webhook_health = (
                subscription.health(
                    now,
                    timedelta(hours=self.config.WEBHOOK_SILENCE_THRESHOLD_HOURS),
                    timedelta(hours=self.config.WEBHOOK_RENEWAL_LEAD_HOURS),
                )
                if subscription
                else SubscriptionHealth.MISSING
            )

            plan = self.plan(key, schedule, now, breaker, token_health, webhook_health)

            if attempted_at is not None:
                schedule.last_sync_at = attempted_at
            schedule.next_sync_at = plan.next_sync_at
            schedule.frequency_ms = int(plan.interval.total_seconds() * 1000) if plan.interval else 0
            schedule.paused_reason = plan.paused_reason
            await self.repository.save_schedule(schedule)

        logger.debug(
            "Sync schedule recomputed",
            tier=plan.tier,
            next_sync_at=plan.next_sync_at.isoformat() if plan.next_sync_at else None,
            frequency_ms=schedule.frequency_ms,
            webhook_health=webhook_health.value,
            consecutive_no_changes=schedule.consecutive_no_changes,
            **key.log_fields(),
        )
        return plan.next_sync_at

    async def initialize_schedule(self, key: SyncKey, *, onboarding: bool = True) -> SyncSchedule:
        """Create the schedule on connect; the initial sync is due immediately."""
        now = self.clock()
        bounds = frequency_bounds_for(key.integration_type, self.config)
        window = timedelta(hours=self.config.ONBOARDING_WINDOW_HOURS)
        interval = bounds.onboarding if onboarding else bounds.default

        async with self.locks.hold(key.lock_name(LOCK_NAMESPACE)):
            existing = await self.repository.get_schedule(key)
            schedule = SyncSchedule(
                user_id=key.user_id,
                integration_type=key.integration_type,
                last_sync_at=existing.last_sync_at if existing else None,
                next_sync_at=now,
                frequency_ms=int(interval.total_seconds() * 1000),
                onboarding_until=now + window if onboarding else None,
                created_at=existing.created_at if existing else now,
            )
            await self.repository.save_schedule(schedule)

        logger.info(
            "Sync schedule initialized",
            onboarding_until=schedule.onboarding_until.isoformat() if schedule.onboarding_until else None,
            **key.log_fields(),
        )
        return schedule

    async def get_schedule(self, key: SyncKey) -> SyncSchedule | None:
        return await self.repository.get_schedule(key)

    async def get_due_keys(self, limit: int) -> list[SyncKey]:
        schedules = await self.repository.list_due_schedules(self.clock(), limit)
        return [schedule.key for schedule in schedules]
