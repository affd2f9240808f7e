"""
Webhook Subscription Manager for provider push channels.

Owns the lifecycle of one push subscription per (user, integration):
registration with bounded retries, renewal ahead of provider expiry, silence
detection, and validation of inbound notifications. Integrations without a
push API are simply polled.
"""

import asyncio
import hmac
import secrets
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import TYPE_CHECKING

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.collaborators import SubscriptionProvider
from syncguard.models.domain.sync_domain import (
    IntegrationType,
    SubscriptionHealth,
    SyncKey,
    WebhookNotification,
    WebhookSubscription,
)
from syncguard.repositories.sync_state_repository import SyncStateRepository
from syncguard.services.infrastructure.key_locks import KeyLockManager
from syncguard.services.token_health_monitor import TokenHealthMonitor
from syncguard.utils.clock import utc_now

if TYPE_CHECKING:
    from syncguard.services.adaptive_sync_scheduler import AdaptiveSyncScheduler

logger = get_logger(__name__)

LOCK_NAMESPACE = "webhook"
# One provider call; the retry loop in _register owns attempts and backoff
WATCH_TIMEOUT_SECONDS = 20.0

# Google sends a "sync" handshake right after a channel opens; it carries no changes
HANDSHAKE_RESOURCE_STATE = "sync"


class WebhookRegistrationError(Exception):
    """Raised when a push channel cannot be opened."""

    def __init__(self, message: str, operation: str = "register", recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


@dataclass(slots=True)
class NotificationDisposition:
    accepted: bool
    should_sync: bool
    reason: str


class WebhookSubscriptionManager:
    """Push subscription lifecycle per key."""

    def __init__(
        self,
        token_monitor: TokenHealthMonitor,
        locks: KeyLockManager,
        providers: dict[IntegrationType, SubscriptionProvider] | None = None,
        scheduler: "AdaptiveSyncScheduler | None" = None,
        repository: SyncStateRepository | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.token_monitor = token_monitor
        self.locks = locks
        self.providers = providers or {}
        self.scheduler = scheduler
        self.repository = repository or SyncStateRepository()
        self.config = config or settings
        self.clock = clock
        self.sleep = sleep

    @property
    def silence_threshold(self) -> timedelta:
        return timedelta(hours=self.config.WEBHOOK_SILENCE_THRESHOLD_HOURS)

    @property
    def renewal_lead(self) -> timedelta:
        return timedelta(hours=self.config.WEBHOOK_RENEWAL_LEAD_HOURS)

    def supports_push(self, key: SyncKey) -> bool:
        return key.integration_type in self.providers

    def _lock(self, key: SyncKey):
        # Registration sleeps between attempts while holding the key
        attempts = self.config.WEBHOOK_REGISTRATION_ATTEMPTS
        budget = sum(
            self.config.WEBHOOK_REGISTRATION_BACKOFF_SECONDS * (2**i) for i in range(attempts)
        )
        budget += attempts * WATCH_TIMEOUT_SECONDS + self.locks.acquire_timeout
        return self.locks.hold(key.lock_name(LOCK_NAMESPACE), timeout=budget)

    def classify(self, subscription: WebhookSubscription | None) -> SubscriptionHealth:
        if subscription is None:
            return SubscriptionHealth.MISSING
        return subscription.health(self.clock(), self.silence_threshold, self.renewal_lead)

    async def check_health(self, key: SyncKey) -> SubscriptionHealth:
        """Healthy, Silent, Expiring, Expired or Missing for this key."""
        return self.classify(await self.repository.get_subscription(key))

    async def ensure_registered(
        self, key: SyncKey, *, force: bool = False
    ) -> WebhookSubscription | None:
        """
        Make sure a live push channel exists for this key.

        Args:
            key: Integration key
            force: Re-register even if the current channel looks healthy

        Returns:
            The active subscription, or None when push is unsupported or
            registration was exhausted (the key falls back to polling)
        """
        if not self.supports_push(key):
            return None

        async with self._lock(key):
            existing = await self.repository.get_subscription(key)
            if not force and self.classify(existing) == SubscriptionHealth.HEALTHY:
                return existing
            subscription = await self._register(key, existing)

        await self._recompute_schedule(key)
        return subscription

    async def _register(
        self, key: SyncKey, existing: WebhookSubscription | None
    ) -> WebhookSubscription | None:
        check = await self.token_monitor.get_usable_token(key)
        if not check.usable:
            logger.warning(
                "Skipping webhook registration, no usable token",
                reason=check.reason,
                **key.log_fields(),
            )
            return existing

        provider = self.providers[key.integration_type]
        attempts = self.config.WEBHOOK_REGISTRATION_ATTEMPTS
        last_error: str | None = None

        for attempt in range(1, attempts + 1):
            channel_id = f"{key.integration_type.value}-{key.user_id}-{secrets.token_hex(8)}"
            channel_token = secrets.token_urlsafe(24)
            try:
                registration = await asyncio.wait_for(
                    provider.watch(key.user_id, check.token.access_token, channel_id, channel_token),
                    timeout=WATCH_TIMEOUT_SECONDS,
                )
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    "Webhook registration attempt failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=last_error,
                    **key.log_fields(),
                )
                if existing is not None:
                    existing.registration_attempts = attempt
                    await self.repository.save_subscription(existing)
                if attempt < attempts:
                    await self.sleep(
                        self.config.WEBHOOK_REGISTRATION_BACKOFF_SECONDS * (2 ** (attempt - 1))
                    )
                continue

            subscription = WebhookSubscription(
                user_id=key.user_id,
                integration_type=key.integration_type,
                channel_id=registration.channel_id,
                resource_id=registration.resource_id,
                channel_token=channel_token,
                expires_at=registration.expires_at,
                registration_attempts=0,
                created_at=self.clock(),
            )
            await self.repository.save_subscription(subscription)

            if existing is not None and existing.channel_id != subscription.channel_id:
                await self._stop_channel(existing, check.token.access_token)

            logger.info(
                "Webhook registered",
                channel_id=subscription.channel_id,
                expires_at=subscription.expires_at.isoformat(),
                attempt=attempt,
                replaced_channel_id=existing.channel_id if existing else None,
                **key.log_fields(),
            )
            return subscription

        # Polling covers this key until the next renewal sweep tries again
        if existing is not None:
            await self._stop_channel(existing, check.token.access_token)
            await self.repository.delete_subscription(key)
        logger.warning(
            "Webhook registration exhausted, falling back to polling",
            attempts=attempts,
            error=last_error,
            **key.log_fields(),
        )
        return None

    async def on_notification(
        self, key: SyncKey, payload: WebhookNotification
    ) -> NotificationDisposition:
        """
        Validate an inbound push against the stored channel and record liveness.

        Returns:
            Disposition telling the caller whether an incremental sync is warranted
        """
        now = payload.received_at or self.clock()

        async with self.locks.hold(key.lock_name(LOCK_NAMESPACE)):
            subscription = await self.repository.get_subscription(key)
            rejection = self._validate(subscription, payload)
            if rejection is not None:
                await self._record_event(payload, key, "failure", now, rejection)
                logger.warning(
                    "Rejected webhook notification",
                    reason=rejection,
                    channel_id=payload.channel_id,
                    **key.log_fields(),
                )
                return NotificationDisposition(accepted=False, should_sync=False, reason=rejection)

            previous_health = subscription.health(now, self.silence_threshold, self.renewal_lead)
            subscription.last_notification_at = now
            await self.repository.save_subscription(subscription)

        if payload.resource_state == HANDSHAKE_RESOURCE_STATE:
            await self._record_event(payload, key, "ignored", now)
            disposition = NotificationDisposition(accepted=True, should_sync=False, reason="handshake")
        else:
            await self._record_event(payload, key, "success", now)
            disposition = NotificationDisposition(accepted=True, should_sync=True, reason="changed")

        if previous_health == SubscriptionHealth.SILENT:
            logger.info("Silent webhook resumed delivering", **key.log_fields())
            await self._recompute_schedule(key)

        return disposition

    def _validate(
        self, subscription: WebhookSubscription | None, payload: WebhookNotification
    ) -> str | None:
        if subscription is None or subscription.channel_id != payload.channel_id:
            return "unknown_channel"
        if (
            subscription.resource_id
            and payload.resource_id
            and subscription.resource_id != payload.resource_id
        ):
            return "resource_mismatch"
        if subscription.channel_token and not hmac.compare_digest(
            subscription.channel_token, payload.channel_token or ""
        ):
            return "invalid_channel_token"
        return None

    async def run_health_check(self, key: SyncKey) -> SubscriptionHealth:
        """Health sweep step: re-register a silent or lapsed channel immediately."""
        health = await self.check_health(key)
        if health in (SubscriptionHealth.SILENT, SubscriptionHealth.EXPIRED):
            logger.warning(
                "Webhook subscription unhealthy, re-registering",
                health=health.value,
                **key.log_fields(),
            )
            await self.ensure_registered(key, force=True)
        elif health == SubscriptionHealth.EXPIRING:
            # Push no longer covers the key until renewal; poll at the default interval
            await self._recompute_schedule(key)
        return health

    async def renew_if_expiring(self, key: SyncKey) -> bool:
        """Renewal sweep step. Also retries keys whose registration was exhausted."""
        if not self.supports_push(key):
            return False
        health = await self.check_health(key)
        if health in (
            SubscriptionHealth.EXPIRING,
            SubscriptionHealth.EXPIRED,
            SubscriptionHealth.MISSING,
        ):
            subscription = await self.ensure_registered(key, force=True)
            return subscription is not None
        return False

    async def stop(self, key: SyncKey) -> None:
        """Close the channel on disconnect."""
        async with self.locks.hold(key.lock_name(LOCK_NAMESPACE)):
            subscription = await self.repository.get_subscription(key)
            if subscription is None:
                return
            token = await self.token_monitor.token_provider.get_token(
                key.user_id, key.integration_type
            )
            if token is not None:
                await self._stop_channel(subscription, token.access_token)
            await self.repository.delete_subscription(key)
        logger.info("Webhook subscription stopped", **key.log_fields())

    async def failure_rate(self, window: timedelta = timedelta(hours=24)) -> dict:
        """Share of rejected notifications over the window; handshakes are excluded."""
        counts = await self.repository.count_webhook_events_since(self.clock() - window)
        successes = counts.get("success", 0)
        failures = counts.get("failure", 0)
        total = successes + failures
        rate = failures / total if total else 0.0
        return {
            "window_hours": window.total_seconds() / 3600,
            "successes": successes,
            "failures": failures,
            "ignored": counts.get("ignored", 0),
            "failure_rate": round(rate, 4),
            "is_high": rate > self.config.WEBHOOK_FAILURE_RATE_THRESHOLD,
        }

    async def _stop_channel(self, subscription: WebhookSubscription, access_token: str) -> None:
        provider = self.providers.get(subscription.integration_type)
        if provider is None:
            return
        try:
            await asyncio.wait_for(
                provider.stop(subscription.channel_id, subscription.resource_id, access_token),
                timeout=WATCH_TIMEOUT_SECONDS,
            )
        except Exception as e:
            # Channel expires on its own at the provider
            logger.warning(
                "Failed to stop webhook channel",
                channel_id=subscription.channel_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def _record_event(
        self,
        payload: WebhookNotification,
        key: SyncKey | None,
        result: str,
        received_at: datetime,
        error_message: str | None = None,
    ) -> None:
        try:
            await self.repository.record_webhook_event(
                payload.channel_id, key, payload.resource_state, result, received_at, error_message
            )
        except Exception as e:
            logger.error("Failed to record webhook event", error=str(e), channel_id=payload.channel_id)

    async def record_unknown_channel(self, payload: WebhookNotification) -> None:
        """Log a push for a channel we no longer track."""
        await self._record_event(
            payload, None, "failure", payload.received_at or self.clock(), "unknown_channel"
        )

    async def _recompute_schedule(self, key: SyncKey) -> None:
        if self.scheduler is None:
            return
        try:
            await self.scheduler.next_sync_time(key)
        except Exception as e:
            logger.error(
                "Schedule recompute after webhook change failed",
                error=str(e),
                error_type=type(e).__name__,
                **key.log_fields(),
            )
