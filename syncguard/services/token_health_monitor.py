"""
Token Health Monitor for integration credentials.

Tracks whether the OAuth credential behind each (user, integration) key is
usable, refreshable or revoked, refreshes it inside the expiry lead window,
and requests a single re-authentication notice when the grant is revoked.
"""

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.collaborators import RefreshError, Token, TokenProvider
from syncguard.models.domain.sync_domain import (
    SyncKey,
    TokenHealth,
    TokenStatus,
    advance_token_status,
)
from syncguard.repositories.sync_state_repository import SyncStateRepository
from syncguard.services.infrastructure.key_locks import KeyLockManager
from syncguard.services.token_health_notification_service import TokenHealthNotificationService
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)

LOCK_NAMESPACE = "token"


class TokenCheckOutcome(str, Enum):
    USABLE = "usable"
    REFRESH_REQUIRED = "refresh_required"
    INVALID = "invalid"


@dataclass(slots=True)
class TokenCheck:
    outcome: TokenCheckOutcome
    token: Token | None = None
    reason: str | None = None

    @property
    def usable(self) -> bool:
        return self.outcome == TokenCheckOutcome.USABLE

    @classmethod
    def ok(cls, token: Token) -> "TokenCheck":
        return cls(outcome=TokenCheckOutcome.USABLE, token=token)

    @classmethod
    def refresh_required(cls, reason: str) -> "TokenCheck":
        return cls(outcome=TokenCheckOutcome.REFRESH_REQUIRED, reason=reason)

    @classmethod
    def invalid(cls, reason: str) -> "TokenCheck":
        return cls(outcome=TokenCheckOutcome.INVALID, reason=reason)


class TokenHealthMonitor:
    """Credential state machine: healthy -> expiring_soon -> expired, or invalid."""

    def __init__(
        self,
        token_provider: TokenProvider,
        locks: KeyLockManager,
        notifications: TokenHealthNotificationService | None = None,
        repository: SyncStateRepository | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.token_provider = token_provider
        self.locks = locks
        self.repository = repository or SyncStateRepository()
        self.notifications = notifications or TokenHealthNotificationService(
            repository=self.repository, config=config, clock=clock
        )
        self.config = config or settings
        self.clock = clock

    @property
    def lead_window(self) -> timedelta:
        return timedelta(minutes=self.config.TOKEN_EXPIRY_LEAD_MINUTES)

    def _lock(self, key: SyncKey):
        # The refresh call happens under the lock, so the wait must outlast it
        return self.locks.hold(
            key.lock_name(LOCK_NAMESPACE),
            timeout=self.config.TOKEN_REFRESH_TIMEOUT_SECONDS + self.locks.acquire_timeout,
        )

    async def get_usable_token(self, key: SyncKey) -> TokenCheck:
        """
        Return a token the sync may use, refreshing it first when it is close to expiry.

        Returns:
            TokenCheck usable(token), refresh_required (skip this attempt) or invalid
        """
        async with self._lock(key):
            now = self.clock()
            health = await self.repository.get_token_health(key)

            if health is None:
                cached = await self.token_provider.get_token(key.user_id, key.integration_type)
                if cached is None:
                    return TokenCheck.invalid("not_connected")
                health = TokenHealth(
                    user_id=key.user_id,
                    integration_type=key.integration_type,
                    expires_at=cached.expires_at,
                )

            if health.is_invalid():
                return TokenCheck.invalid(health.error_message or "token_invalid")

            health.last_checked_at = now

            if not health.needs_refresh(now, self.lead_window):
                cached = await self.token_provider.get_token(key.user_id, key.integration_type)
                if cached is not None:
                    await self.repository.save_token_health(health)
                    return TokenCheck.ok(cached)
                logger.warning("Stored token missing, forcing refresh", **key.log_fields())

            self._set_status(health, health.derive_status(now, self.lead_window), "lead_window")
            return await self._refresh(key, health, now)

    async def report_auth_failure(self, key: SyncKey, error_class: str) -> TokenCheck:
        """
        Handle an auth rejection from the provider during a sync.

        A 401 usually means the access token went stale before expires_at said
        so; a forced refresh tells a stale token apart from a revoked grant.
        """
        async with self._lock(key):
            health = await self.repository.get_token_health(key)
            if health is None or health.is_invalid():
                return TokenCheck.invalid("token_invalid")

            logger.info(
                "Provider rejected credential, forcing refresh",
                error_class=error_class,
                **key.log_fields(),
            )
            now = self.clock()
            health.last_checked_at = now
            return await self._refresh(key, health, now)

    async def sweep_key(self, key: SyncKey) -> TokenStatus | None:
        """
        Background pass for one key: re-derive status from expires_at when the key
        has not been looked at recently, and refresh it inside the lead window.
        """
        async with self._lock(key):
            health = await self.repository.get_token_health(key)
            if health is None or health.is_invalid():
                return health.status if health else None

            now = self.clock()
            stale_after = timedelta(hours=self.config.TOKEN_STALE_AFTER_HOURS)
            if health.last_checked_at is None or now - health.last_checked_at >= stale_after:
                self._set_status(health, health.derive_status(now, self.lead_window), "sweep")

            health.last_checked_at = now

            if health.needs_refresh(now, self.lead_window):
                await self._refresh(key, health, now)
            else:
                await self.repository.save_token_health(health)

            return health.status

    async def on_grant(self, key: SyncKey, expires_at: datetime | None) -> TokenHealth:
        """Start tracking a freshly granted credential."""
        now = self.clock()
        health = TokenHealth(
            user_id=key.user_id,
            integration_type=key.integration_type,
            status=TokenStatus.HEALTHY,
            expires_at=expires_at,
            last_refresh_at=now,
            last_checked_at=now,
        )
        async with self._lock(key):
            await self.repository.save_token_health(health)
        logger.info("Token health initialized", **key.log_fields())
        return health

    async def on_reauthenticated(self, key: SyncKey, expires_at: datetime | None) -> TokenHealth:
        """External reset out of any state, including invalid."""
        health = await self.on_grant(key, expires_at)
        await self.notifications.resolve(key)
        return health

    async def get_health(self, key: SyncKey) -> TokenHealth | None:
        return await self.repository.get_token_health(key)

    async def _refresh(self, key: SyncKey, health: TokenHealth, now: datetime) -> TokenCheck:
        """Refresh under the caller's lock and persist the outcome."""
        try:
            token = await asyncio.wait_for(
                self.token_provider.refresh(key.user_id, key.integration_type),
                timeout=self.config.TOKEN_REFRESH_TIMEOUT_SECONDS,
            )
        except RefreshError as e:
            if not e.retryable:
                await self._mark_invalid(key, health, str(e))
                return TokenCheck.invalid("token_revoked")
            return await self._record_retryable_failure(key, health, now, str(e))
        except TimeoutError:
            return await self._record_retryable_failure(
                key,
                health,
                now,
                f"Token refresh timed out after {self.config.TOKEN_REFRESH_TIMEOUT_SECONDS}s",
            )
        except Exception as e:
            logger.error(
                "Unexpected token refresh error",
                error=str(e),
                error_type=type(e).__name__,
                **key.log_fields(),
            )
            return await self._record_retryable_failure(key, health, now, f"{type(e).__name__}: {e}")

        previous = health.status
        health.status = TokenStatus.HEALTHY
        health.expires_at = token.expires_at
        health.consecutive_refresh_failures = 0
        health.last_refresh_at = now
        health.error_message = None
        await self.repository.save_token_health(health)

        logger.info(
            "Token refreshed",
            previous_status=previous.value,
            expires_at=token.expires_at.isoformat() if token.expires_at else None,
            **key.log_fields(),
        )
        return TokenCheck.ok(token)

    async def _record_retryable_failure(
        self, key: SyncKey, health: TokenHealth, now: datetime, error: str
    ) -> TokenCheck:
        health.consecutive_refresh_failures += 1
        health.error_message = error

        past_threshold = (
            health.consecutive_refresh_failures >= self.config.TOKEN_REFRESH_FAILURE_THRESHOLD
        )
        if past_threshold or health.is_expired(now):
            self._set_status(health, TokenStatus.EXPIRED, "refresh_failed")

        await self.repository.save_token_health(health)

        logger.warning(
            "Token refresh failed, will retry",
            error=error,
            consecutive_refresh_failures=health.consecutive_refresh_failures,
            status=health.status.value,
            **key.log_fields(),
        )

        if health.status == TokenStatus.EXPIRED:
            return TokenCheck.refresh_required("token_expired")

        # Refresh failed but the current access token has not expired yet
        cached = await self.token_provider.get_token(key.user_id, key.integration_type)
        if cached is None:
            return TokenCheck.refresh_required("token_missing")
        return TokenCheck.ok(cached)

    async def _mark_invalid(self, key: SyncKey, health: TokenHealth, error: str) -> None:
        self._set_status(health, TokenStatus.INVALID, "grant_revoked")
        health.error_message = error
        await self.repository.save_token_health(health)
        await self.notifications.request_reauth(key)

    def _set_status(self, health: TokenHealth, proposed: TokenStatus, reason: str) -> None:
        new_status = advance_token_status(health.status, proposed)
        if new_status == health.status:
            return

        log = logger.warning if new_status == TokenStatus.INVALID else logger.info
        log(
            "Token status changed",
            from_status=health.status.value,
            to_status=new_status.value,
            reason=reason,
            user_id=health.user_id,
            integration_type=health.integration_type.value,
        )
        health.status = new_status
