"""
Sync API response models.
Used by routes for output formatting.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class WebhookAckResponse(BaseModel):
    """Acknowledgement returned to the push provider."""

    ok: bool = Field(default=True, description="Notification received")
    accepted: bool = Field(..., description="Notification matched the stored channel")
    sync_enqueued: bool = Field(..., description="Incremental sync queued")
    reason: str = Field(..., description="Disposition reason")


class ManualSyncResponse(BaseModel):
    """Result of a manual "sync now" request."""

    user_id: str = Field(..., description="User ID")
    integration_type: str = Field(..., description="Integration type")
    result: str = Field(..., description="success or failure")
    skip_reason: str | None = Field(None, description="Why the attempt was short-circuited")
    error_class: str | None = Field(None, description="Provider error classification")
    items_synced: int = Field(default=0, description="Items pulled from the provider")
    duration_ms: int = Field(default=0, description="Attempt duration")
    next_sync_at: datetime | None = Field(None, description="Next scheduled sync")


class SyncStatusResponse(BaseModel):
    """Reliability state of one integration for one user."""

    user_id: str = Field(..., description="User ID")
    integration_type: str = Field(..., description="Integration type")
    connected: bool = Field(..., description="Whether a sync schedule exists")
    in_flight: bool = Field(..., description="A sync is currently running")
    breaker_state: str = Field(..., description="closed, open or half_open")
    consecutive_failures: int = Field(..., description="Counted failures since last success")
    next_probe_at: datetime | None = Field(None, description="Earliest half-open probe")
    token_status: str | None = Field(None, description="Credential health")
    webhook_health: str = Field(..., description="Push channel health")
    last_sync_at: datetime | None = Field(None, description="Start of the last attempt")
    next_sync_at: datetime | None = Field(None, description="Next scheduled sync")
    paused_reason: str | None = Field(None, description="Why polling is paused")
