"""
Inbound push notifications.
Google Calendar delivers channel events as header-only POSTs.
"""

from fastapi import APIRouter, Depends, Header, HTTPException, status

from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.api.sync_response import WebhookAckResponse
from syncguard.models.domain.sync_domain import WebhookNotification
from syncguard.routes.dependencies import get_sync_orchestrator
from syncguard.services.sync_orchestrator import SyncOrchestrator
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/calendar", response_model=WebhookAckResponse)
async def calendar_notification(
    x_goog_channel_id: str | None = Header(None),
    x_goog_resource_id: str | None = Header(None),
    x_goog_resource_state: str | None = Header(None),
    x_goog_channel_token: str | None = Header(None),
    x_goog_message_number: str | None = Header(None),
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Validate the push against the stored channel and enqueue an incremental sync."""
    if not x_goog_channel_id or not x_goog_resource_state:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing X-Goog-Channel-ID or X-Goog-Resource-State header",
        )

    try:
        message_number = int(x_goog_message_number) if x_goog_message_number else None
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid X-Goog-Message-Number header"
        ) from None

    payload = WebhookNotification(
        channel_id=x_goog_channel_id,
        resource_id=x_goog_resource_id,
        resource_state=x_goog_resource_state,
        channel_token=x_goog_channel_token,
        message_number=message_number,
        received_at=utc_now(),
    )

    subscription = await orchestrator.repository.get_subscription_by_channel(x_goog_channel_id)
    if subscription is None:
        await orchestrator.webhooks.record_unknown_channel(payload)
        logger.warning("Webhook for unknown channel", channel_id=x_goog_channel_id)
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown channel")

    try:
        disposition = await orchestrator.on_webhook_notification(subscription.key, payload)
    except TimeoutError:
        # Non-2xx makes Google redeliver with backoff
        logger.error(
            "Webhook handling timed out",
            channel_id=x_goog_channel_id,
            **subscription.key.log_fields(),
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhook handling timed out"
        ) from None

    return WebhookAckResponse(
        accepted=disposition.accepted,
        sync_enqueued=disposition.should_sync,
        reason=disposition.reason,
    )
