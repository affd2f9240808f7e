"""
Internal sync API.
Manual "sync now" and per-key reliability status for the onboarding UI.
"""

import hmac

from fastapi import APIRouter, Depends, Header, HTTPException, status

from syncguard.config import settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.api.sync_response import ManualSyncResponse, SyncStatusResponse
from syncguard.models.domain.sync_domain import IntegrationType, SkipReason, SyncKey
from syncguard.routes.dependencies import get_sync_orchestrator
from syncguard.services.infrastructure.redis_client import redis_client
from syncguard.services.sync_orchestrator import SyncOrchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


def verify_internal_token(x_internal_token: str | None = Header(None)) -> None:
    expected = settings.INTERNAL_API_TOKEN
    if not expected or not x_internal_token or not hmac.compare_digest(expected, x_internal_token):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid internal token")


async def _acquire_manual_slot(key: SyncKey) -> bool:
    """One manual sync per key per window. Fails open when Redis is unreachable."""
    try:
        return await redis_client.acquire_slot(
            f"syncguard:manual_sync:{key}", settings.MANUAL_SYNC_RATE_LIMIT_SECONDS
        )
    except Exception as e:
        logger.error(
            "Manual sync rate limit check failed, allowing request",
            error=str(e),
            error_type=type(e).__name__,
            **key.log_fields(),
        )
        return True


@router.post(
    "/{integration_type}/{user_id}",
    response_model=ManualSyncResponse,
    dependencies=[Depends(verify_internal_token)],
)
async def sync_now(
    integration_type: IntegrationType,
    user_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    """Run a manual sync now, through the same breaker and token gating as scheduled syncs."""
    key = SyncKey(user_id, integration_type)

    if not await _acquire_manual_slot(key):
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=f"Manual sync allowed once every {settings.MANUAL_SYNC_RATE_LIMIT_SECONDS}s",
        )

    outcome = await orchestrator.sync_now(key)

    if outcome.skip_reason == SkipReason.TOKEN_INVALID:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={
                "error": "reauth_required",
                "reauth_url": settings.reauth_url(integration_type.value),
            },
        )
    if outcome.skip_reason == SkipReason.ALREADY_IN_FLIGHT:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Sync already in progress")

    return ManualSyncResponse(
        user_id=outcome.user_id,
        integration_type=outcome.integration_type.value,
        result=outcome.result.value,
        skip_reason=outcome.skip_reason.value if outcome.skip_reason else None,
        error_class=outcome.error_class,
        items_synced=outcome.items_synced,
        duration_ms=outcome.duration_ms,
        next_sync_at=outcome.next_sync_at,
    )


@router.get(
    "/{integration_type}/{user_id}/status",
    response_model=SyncStatusResponse,
    dependencies=[Depends(verify_internal_token)],
)
async def sync_status(
    integration_type: IntegrationType,
    user_id: str,
    orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator),
):
    key = SyncKey(user_id, integration_type)
    try:
        return SyncStatusResponse(**await orchestrator.get_sync_status(key))
    except Exception as e:
        logger.error(
            "Error getting sync status",
            error=str(e),
            error_type=type(e).__name__,
            **key.log_fields(),
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to get sync status",
        ) from e
