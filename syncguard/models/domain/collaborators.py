"""
Interfaces of the external collaborators the orchestrator depends on.

The core only relies on these shapes and on the error classification carried
by ProviderError and RefreshError, never on provider-specific payloads.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Protocol

from syncguard.models.domain.sync_domain import (
    IntegrationType,
    SyncType,
    TokenHealthNotification,
)


class ProviderErrorClass(str, Enum):
    TRANSIENT = "transient"
    RATE_LIMITED = "rate_limited"
    AUTH_INVALID = "auth_invalid"
    PERMANENT = "permanent"


class ProviderError(Exception):
    """Classified failure from a provider API call."""

    def __init__(
        self,
        message: str,
        error_class: ProviderErrorClass = ProviderErrorClass.TRANSIENT,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.error_class = error_class
        self.status_code = status_code

    @property
    def counts_toward_breaker(self) -> bool:
        return self.error_class != ProviderErrorClass.AUTH_INVALID


class RefreshError(Exception):
    """Token refresh failure. Non-retryable means the grant was revoked."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@dataclass(slots=True)
class Token:
    access_token: str
    expires_at: datetime | None = None


@dataclass(slots=True)
class SyncResult:
    items_synced: int = 0
    cursor: str | None = None


@dataclass(slots=True)
class ChannelRegistration:
    channel_id: str
    resource_id: str | None
    expires_at: datetime


class ProviderClient(Protocol):
    async def call(self, request: Any) -> Any:
        """Perform one provider request or raise ProviderError."""


class TokenProvider(Protocol):
    async def get_token(self, user_id: str, integration_type: IntegrationType) -> Token | None:
        """Return the stored access token, if any."""

    async def refresh(self, user_id: str, integration_type: IntegrationType) -> Token:
        """Exchange the refresh token for a new access token or raise RefreshError."""


class SyncExecutor(Protocol):
    async def run(
        self,
        user_id: str,
        integration_type: IntegrationType,
        sync_type: SyncType,
        *,
        access_token: str,
    ) -> SyncResult:
        """Pull provider changes into local records. Raises ProviderError on provider failure."""


class SubscriptionProvider(Protocol):
    async def watch(
        self, user_id: str, access_token: str, channel_id: str, channel_token: str
    ) -> ChannelRegistration:
        """Open a push channel or raise ProviderError."""

    async def stop(self, channel_id: str, resource_id: str | None, access_token: str) -> None:
        """Close a push channel."""


class NotificationSink(Protocol):
    async def notify(self, notification: TokenHealthNotification) -> None:
        """Deliver a user-facing re-authentication request."""
