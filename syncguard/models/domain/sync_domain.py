"""
Domain models for per-(user, integration) sync reliability state.
One persisted record type per state machine plus the append-only sync metric.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class IntegrationType(str, Enum):
    CONTACTS = "contacts"
    CALENDAR = "calendar"


class BreakerStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class TokenStatus(str, Enum):
    HEALTHY = "healthy"
    EXPIRING_SOON = "expiring_soon"
    EXPIRED = "expired"
    INVALID = "invalid"


# Forward-only ordering; INVALID is reachable from anywhere and never left
_TOKEN_STATUS_RANK = {
    TokenStatus.HEALTHY: 0,
    TokenStatus.EXPIRING_SOON: 1,
    TokenStatus.EXPIRED: 2,
    TokenStatus.INVALID: 3,
}


class SubscriptionHealth(str, Enum):
    HEALTHY = "healthy"
    SILENT = "silent"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    MISSING = "missing"


class SyncType(str, Enum):
    INITIAL = "initial"
    INCREMENTAL = "incremental"
    MANUAL = "manual"
    WEBHOOK_TRIGGERED = "webhook_triggered"


class SyncResultStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class SkipReason(str, Enum):
    CIRCUIT_OPEN = "circuit_open"
    PROBE_IN_FLIGHT = "probe_in_flight"
    TOKEN_INVALID = "token_invalid"
    TOKEN_EXPIRED = "token_expired"
    ALREADY_IN_FLIGHT = "already_in_flight"
    SHUTTING_DOWN = "shutting_down"


@dataclass(frozen=True, slots=True)
class SyncKey:
    """Identity of every per-integration state machine."""

    user_id: str
    integration_type: IntegrationType

    def __str__(self) -> str:
        return f"{self.user_id}:{self.integration_type.value}"

    def lock_name(self, namespace: str) -> str:
        return f"syncguard:{namespace}:{self}"

    def log_fields(self) -> dict[str, str]:
        return {"user_id": self.user_id, "integration_type": self.integration_type.value}


@dataclass(frozen=True, slots=True)
class FrequencyBounds:
    """Polling intervals for one integration type."""

    onboarding: timedelta
    default: timedelta
    webhook_fallback: timedelta
    min: timedelta
    max: timedelta

    def clamp(self, interval: timedelta) -> timedelta:
        return max(self.min, min(self.max, interval))


@dataclass(slots=True)
class Decision:
    """Outcome of CircuitBreakerManager.allow."""

    proceed: bool
    reason: SkipReason | None = None
    is_probe: bool = False

    @classmethod
    def allow(cls, is_probe: bool = False) -> "Decision":
        return cls(proceed=True, is_probe=is_probe)

    @classmethod
    def reject(cls, reason: SkipReason) -> "Decision":
        return cls(proceed=False, reason=reason)


class CircuitBreakerState(BaseModel):
    """Persisted circuit breaker for one (user, integration) key."""

    user_id: str
    integration_type: IntegrationType
    state: BreakerStatus = BreakerStatus.CLOSED
    consecutive_failures: int = 0
    trip_count: int = 0
    last_failure_at: datetime | None = None
    last_failure_reason: str | None = None
    opened_at: datetime | None = None
    next_probe_at: datetime | None = None
    probe_started_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> SyncKey:
        return SyncKey(self.user_id, self.integration_type)

    def is_tripped(self) -> bool:
        return self.state in (BreakerStatus.OPEN, BreakerStatus.HALF_OPEN)

    def backoff_factor(self) -> int:
        """Multiplier applied to the polling interval while the breaker is tripped."""
        if not self.is_tripped() or self.trip_count < 1:
            return 1
        return 2 ** (self.trip_count - 1)


class TokenHealth(BaseModel):
    """Tracked usability of the OAuth credential behind one key."""

    user_id: str
    integration_type: IntegrationType
    status: TokenStatus = TokenStatus.HEALTHY
    expires_at: datetime | None = None
    consecutive_refresh_failures: int = 0
    last_refresh_at: datetime | None = None
    last_checked_at: datetime | None = None
    error_message: str | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> SyncKey:
        return SyncKey(self.user_id, self.integration_type)

    def is_invalid(self) -> bool:
        return self.status == TokenStatus.INVALID

    def is_expired(self, now: datetime) -> bool:
        if not self.expires_at:
            return False
        return now >= self.expires_at

    def needs_refresh(self, now: datetime, lead: timedelta) -> bool:
        """True inside the expiry lead window or once already expiring/expired."""
        if self.status in (TokenStatus.EXPIRING_SOON, TokenStatus.EXPIRED):
            return True
        if not self.expires_at:
            return False
        return now + lead >= self.expires_at

    def derive_status(self, now: datetime, lead: timedelta) -> TokenStatus:
        """
        Re-derive status from expires_at alone.

        Never moves backward along healthy -> expiring_soon -> expired and
        never leaves invalid; only a successful refresh or re-authentication
        resets the status.
        """
        if self.status == TokenStatus.INVALID or not self.expires_at:
            return self.status

        if now >= self.expires_at:
            derived = TokenStatus.EXPIRED
        elif now + lead >= self.expires_at:
            derived = TokenStatus.EXPIRING_SOON
        else:
            derived = TokenStatus.HEALTHY

        return advance_token_status(self.status, derived)


def advance_token_status(current: TokenStatus, proposed: TokenStatus) -> TokenStatus:
    """Return whichever status is further along the forward-only path."""
    if _TOKEN_STATUS_RANK[proposed] >= _TOKEN_STATUS_RANK[current]:
        return proposed
    return current


class SyncSchedule(BaseModel):
    """When the next sync for a key is due."""

    user_id: str
    integration_type: IntegrationType
    last_sync_at: datetime | None = None
    next_sync_at: datetime | None = None
    frequency_ms: int = 0
    onboarding_until: datetime | None = None
    paused_reason: str | None = None
    consecutive_no_changes: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def key(self) -> SyncKey:
        return SyncKey(self.user_id, self.integration_type)

    def is_onboarding(self, now: datetime) -> bool:
        return self.onboarding_until is not None and now < self.onboarding_until

    def record_changes(self, changes_detected: bool) -> None:
        self.consecutive_no_changes = 0 if changes_detected else self.consecutive_no_changes + 1

    def idle_multiplier(self, stretch_after: int, factor: float) -> float:
        """Polling stretch earned by runs of syncs that found nothing."""
        if stretch_after <= 0:
            return 1.0
        # Past ~20 stretches every interval is pinned to the max bound anyway
        return factor ** min(self.consecutive_no_changes // stretch_after, 20)


class WebhookSubscription(BaseModel):
    """Active push-notification channel for one key."""

    user_id: str
    integration_type: IntegrationType
    channel_id: str
    resource_id: str | None = None
    channel_token: str | None = None
    expires_at: datetime
    last_notification_at: datetime | None = None
    registration_attempts: int = 0
    created_at: datetime

    @property
    def key(self) -> SyncKey:
        return SyncKey(self.user_id, self.integration_type)

    def health(
        self, now: datetime, silence_threshold: timedelta, expiry_lead: timedelta
    ) -> SubscriptionHealth:
        """Classify the channel; silence is judged from creation until the first push."""
        if now >= self.expires_at:
            return SubscriptionHealth.EXPIRED

        last_heard = self.last_notification_at or self.created_at
        if now - last_heard > silence_threshold:
            return SubscriptionHealth.SILENT

        if self.expires_at - now <= expiry_lead:
            return SubscriptionHealth.EXPIRING

        return SubscriptionHealth.HEALTHY


class SyncMetric(BaseModel):
    """One sync attempt. Written once, never updated."""

    user_id: str
    integration_type: IntegrationType
    sync_type: SyncType
    result: SyncResultStatus
    duration_ms: int = 0
    items_synced: int = 0
    error_class: str | None = None
    skip_reason: SkipReason | None = None
    error_message: str | None = None
    timestamp: datetime

    model_config = {"frozen": True}


class WebhookNotification(BaseModel):
    """Inbound push as delivered by the provider's channel headers."""

    channel_id: str
    resource_id: str | None = None
    resource_state: str
    channel_token: str | None = None
    message_number: int | None = None
    received_at: datetime | None = None


class TokenHealthNotification(BaseModel):
    """User-facing re-authentication request; at most one unresolved per key and type."""

    id: int | None = None
    user_id: str
    integration_type: IntegrationType
    notification_type: str = "token_invalid"
    message: str
    reauth_url: str | None = None
    created_at: datetime
    resolved_at: datetime | None = None


class SyncOutcome(BaseModel):
    """What one orchestrator invocation did."""

    user_id: str
    integration_type: IntegrationType
    sync_type: SyncType
    result: SyncResultStatus
    skip_reason: SkipReason | None = None
    error_class: str | None = None
    items_synced: int = 0
    duration_ms: int = 0
    next_sync_at: datetime | None = None
    details: dict[str, Any] = Field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.skip_reason is not None
