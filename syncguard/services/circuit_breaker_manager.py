"""
Circuit Breaker Manager for provider calls.

One persisted breaker per (user, integration). Closed lets every call through;
repeated counted failures trip it Open for an exponentially growing cooldown;
after the cooldown exactly one caller gets a HalfOpen probe whose outcome
either closes the breaker or re-opens it with the next backoff step.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.collaborators import ProviderErrorClass
from syncguard.models.domain.sync_domain import (
    BreakerStatus,
    CircuitBreakerState,
    Decision,
    SkipReason,
    SyncKey,
)
from syncguard.repositories.sync_state_repository import SyncStateRepository
from syncguard.services.infrastructure.key_locks import KeyLockManager
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)

LOCK_NAMESPACE = "breaker"


class CircuitBreakerManager:
    """Per-key breaker state machine backed by circuit_breaker_state."""

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

    @property
    def failure_threshold(self) -> int:
        return self.config.BREAKER_FAILURE_THRESHOLD

    def cooldown_for(self, trip_count: int) -> timedelta:
        """1st trip: base, then doubling per consecutive trip, capped."""
        base = self.config.BREAKER_COOLDOWN_BASE_SECONDS
        seconds = min(base * (2 ** max(trip_count - 1, 0)), self.config.BREAKER_COOLDOWN_CAP_SECONDS)
        return timedelta(seconds=seconds)

    async def get_state(self, key: SyncKey) -> CircuitBreakerState:
        breaker = await self.repository.get_breaker(key)
        return breaker or CircuitBreakerState(
            user_id=key.user_id, integration_type=key.integration_type
        )

    async def allow(self, key: SyncKey) -> Decision:
        """
        Decide whether a provider call may proceed for this key.

        Returns:
            Decision.allow() while Closed or for the single HalfOpen probe,
            Decision.reject(reason) otherwise
        """
        async with self.locks.hold(key.lock_name(LOCK_NAMESPACE)):
            now = self.clock()
            breaker = await self.get_state(key)

            if breaker.state == BreakerStatus.CLOSED:
                return Decision.allow()

            if breaker.state == BreakerStatus.OPEN:
                if breaker.next_probe_at is not None and now < breaker.next_probe_at:
                    return Decision.reject(SkipReason.CIRCUIT_OPEN)
                breaker.state = BreakerStatus.HALF_OPEN
                breaker.probe_started_at = now
                await self.repository.save_breaker(breaker)
                self._log_transition(key, BreakerStatus.OPEN, breaker)
                return Decision.allow(is_probe=True)

            # HALF_OPEN: a probe is already out unless its lease ran out
            lease = timedelta(seconds=self.config.BREAKER_PROBE_LEASE_SECONDS)
            if breaker.probe_started_at is not None and now - breaker.probe_started_at < lease:
                return Decision.reject(SkipReason.PROBE_IN_FLIGHT)

            logger.warning(
                "Abandoned half-open probe, granting a new one",
                probe_started_at=breaker.probe_started_at.isoformat()
                if breaker.probe_started_at
                else None,
                **key.log_fields(),
            )
            breaker.probe_started_at = now
            await self.repository.save_breaker(breaker)
            return Decision.allow(is_probe=True)

    async def record_success(self, key: SyncKey) -> None:
        async with self.locks.hold(key.lock_name(LOCK_NAMESPACE)):
            breaker = await self.get_state(key)
            if breaker.state == BreakerStatus.CLOSED and breaker.consecutive_failures == 0:
                return

            previous = breaker.state
            breaker.state = BreakerStatus.CLOSED
            breaker.consecutive_failures = 0
            breaker.trip_count = 0
            breaker.opened_at = None
            breaker.next_probe_at = None
            breaker.probe_started_at = None
            await self.repository.save_breaker(breaker)

            if previous != BreakerStatus.CLOSED:
                self._log_transition(key, previous, breaker)

    async def record_failure(self, key: SyncKey, error_class: str) -> None:
        """
        Count a failed provider call.

        auth_invalid failures are not counted; credentials are TokenHealthMonitor's
        concern and retrying them here would only delay the real fix.
        """
        if error_class == ProviderErrorClass.AUTH_INVALID.value:
            logger.debug("Auth failure not counted by breaker", **key.log_fields())
            return

        async with self.locks.hold(key.lock_name(LOCK_NAMESPACE)):
            now = self.clock()
            breaker = await self.get_state(key)
            previous = breaker.state

            breaker.consecutive_failures += 1
            breaker.last_failure_at = now
            breaker.last_failure_reason = error_class

            if previous == BreakerStatus.HALF_OPEN:
                self._trip(breaker, now)
            elif previous == BreakerStatus.CLOSED and (
                breaker.consecutive_failures >= self.failure_threshold
            ):
                self._trip(breaker, now)

            await self.repository.save_breaker(breaker)

            if breaker.state != previous:
                self._log_transition(key, previous, breaker)

    async def release_probe(self, key: SyncKey) -> None:
        """Hand back an unused probe slot without counting a failure."""
        async with self.locks.hold(key.lock_name(LOCK_NAMESPACE)):
            breaker = await self.get_state(key)
            if breaker.state != BreakerStatus.HALF_OPEN:
                return
            breaker.state = BreakerStatus.OPEN
            breaker.next_probe_at = self.clock()
            breaker.probe_started_at = None
            await self.repository.save_breaker(breaker)
            self._log_transition(key, BreakerStatus.HALF_OPEN, breaker)

    async def reset(self, key: SyncKey, reason: str = "manual") -> None:
        """Force the breaker Closed (operator action or re-authentication)."""
        async with self.locks.hold(key.lock_name(LOCK_NAMESPACE)):
            breaker = await self.get_state(key)
            previous = breaker.state
            await self.repository.save_breaker(
                CircuitBreakerState(user_id=key.user_id, integration_type=key.integration_type)
            )
            logger.info(
                "Circuit breaker reset",
                previous_state=previous.value,
                reason=reason,
                **key.log_fields(),
            )

    def _trip(self, breaker: CircuitBreakerState, now: datetime) -> None:
        breaker.trip_count += 1
        breaker.state = BreakerStatus.OPEN
        breaker.opened_at = now
        breaker.next_probe_at = now + self.cooldown_for(breaker.trip_count)
        breaker.probe_started_at = None

    def _log_transition(
        self, key: SyncKey, previous: BreakerStatus, breaker: CircuitBreakerState
    ) -> None:
        log = logger.warning if breaker.state == BreakerStatus.OPEN else logger.info
        log(
            "Circuit breaker state changed",
            from_state=previous.value,
            to_state=breaker.state.value,
            consecutive_failures=breaker.consecutive_failures,
            trip_count=breaker.trip_count,
            next_probe_at=breaker.next_probe_at.isoformat() if breaker.next_probe_at else None,
            last_failure_reason=breaker.last_failure_reason,
            **key.log_fields(),
        )
