"""
Sync Metrics Recorder.
Append-only log of sync attempts plus rolling success-rate windows.
"""

from collections.abc import Callable
from datetime import datetime, timedelta

from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.sync_domain import (
    IntegrationType,
    SyncKey,
    SyncMetric,
    SyncResultStatus,
)
from syncguard.repositories.sync_state_repository import SyncStateRepository
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)


class SyncMetricsRecorder:
    """Writes one SyncMetric per orchestrator invocation."""

    def __init__(
        self,
        repository: SyncStateRepository | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.repository = repository or SyncStateRepository()
        self.clock = clock

    async def record(self, metric: SyncMetric) -> bool:
        """
        Append a metric. Never raises: a lost metric must not fail the sync.

        Returns:
            True if the metric was stored
        """
        try:
            await self.repository.append_metric(metric)
        except Exception as e:
            logger.error(
                "Failed to record sync metric",
                error=str(e),
                error_type=type(e).__name__,
                user_id=metric.user_id,
                integration_type=metric.integration_type.value,
                sync_type=metric.sync_type.value,
                result=metric.result.value,
            )
            return False

        logger.info(
            "Sync attempt recorded",
            user_id=metric.user_id,
            integration_type=metric.integration_type.value,
            sync_type=metric.sync_type.value,
            result=metric.result.value,
            duration_ms=metric.duration_ms,
            items_synced=metric.items_synced,
            error_class=metric.error_class,
            skip_reason=metric.skip_reason.value if metric.skip_reason else None,
        )
        return True

    async def success_rate(
        self,
        window: timedelta = timedelta(hours=24),
        key: SyncKey | None = None,
        integration_type: IntegrationType | None = None,
    ) -> dict:
        """
        Rolling success rate over the window.

        Skipped attempts (breaker open, token unusable, duplicate trigger) are
        reported separately and excluded from the rate, which measures the
        provider rather than our own gating.
        """
        since = self.clock() - window
        metrics = await self.repository.list_metrics_since(
            since, key=key, integration_type=integration_type
        )

        attempted = [m for m in metrics if m.skip_reason is None]
        successes = sum(1 for m in attempted if m.result == SyncResultStatus.SUCCESS)
        failures = len(attempted) - successes

        return {
            "window_hours": window.total_seconds() / 3600,
            "total": len(metrics),
            "attempted": len(attempted),
            "successes": successes,
            "failures": failures,
            "skipped": len(metrics) - len(attempted),
            "items_synced": sum(m.items_synced for m in attempted),
            "success_rate": round(successes / len(attempted), 4) if attempted else None,
        }
