"""
Token Health Notification Service.
Records one user-facing re-authentication request per revoked credential.
"""

from collections.abc import Callable
from datetime import datetime

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.collaborators import NotificationSink
from syncguard.models.domain.sync_domain import IntegrationType, SyncKey, TokenHealthNotification
from syncguard.repositories.sync_state_repository import SyncStateRepository
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)

NOTIFICATION_TYPE_TOKEN_INVALID = "token_invalid"

_MESSAGES = {
    IntegrationType.CONTACTS: (
        "We lost access to your contacts. Reconnect to keep your contacts up to date."
    ),
    IntegrationType.CALENDAR: (
        "We lost access to your calendar. Reconnect to keep your schedule up to date."
    ),
}


class TokenHealthNotificationService:
    """
    Persists the notification request and hands it to the delivery collaborator.

    An unresolved row per (key, type) is the dedupe guard: repeated Invalid
    transitions for the same key never produce a second request until the
    user re-authenticates and the row is resolved.
    """

    def __init__(
        self,
        repository: SyncStateRepository | None = None,
        sink: NotificationSink | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository or SyncStateRepository()
        self.sink = sink
        self.config = config or settings
        self.clock = clock

    async def request_reauth(self, key: SyncKey) -> bool:
        """
        Request a re-authentication notice for this key.

        Returns:
            True if a new request was created, False if one is already pending
        """
        notification = TokenHealthNotification(
            user_id=key.user_id,
            integration_type=key.integration_type,
            notification_type=NOTIFICATION_TYPE_TOKEN_INVALID,
            message=_MESSAGES[key.integration_type],
            reauth_url=self.config.reauth_url(key.integration_type.value),
            created_at=self.clock(),
        )

        created = await self.repository.create_notification_if_absent(notification)
        if not created:
            logger.debug("Re-auth notification already pending", **key.log_fields())
            return False

        logger.info("Re-auth notification requested", **key.log_fields())

        if self.sink is not None:
            try:
                await self.sink.notify(notification)
            except Exception as e:
                # The persisted row stays pending; delivery can be retried from it
                logger.error(
                    "Notification delivery failed",
                    error=str(e),
                    error_type=type(e).__name__,
                    **key.log_fields(),
                )

        return True

    async def resolve(self, key: SyncKey) -> int:
        """Close pending requests after the user re-authenticates."""
        resolved = await self.repository.resolve_notifications(key, self.clock())
        if resolved:
            logger.info("Re-auth notifications resolved", count=resolved, **key.log_fields())
        return resolved
