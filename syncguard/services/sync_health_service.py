"""
Operator-facing sync health.

Aggregates breaker, token, webhook and success-rate state across all keys
for the /health/sync route. Breakers stuck open past the alert threshold are
logged at error, which is what alerting keys off.
"""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.sync_domain import BreakerStatus, SubscriptionHealth, TokenStatus
from syncguard.repositories.sync_state_repository import SyncStateRepository
from syncguard.services.sync_metrics_recorder import SyncMetricsRecorder
from syncguard.services.webhook_subscription_manager import WebhookSubscriptionManager
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)


class SyncHealthService:
    def __init__(
        self,
        metrics: SyncMetricsRecorder,
        webhooks: WebhookSubscriptionManager,
        repository: SyncStateRepository | None = None,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.metrics = metrics
        self.webhooks = webhooks
        self.repository = repository or SyncStateRepository()
        self.config = config or settings
        self.clock = clock

    async def breaker_summary(self) -> dict[str, Any]:
        now = self.clock()
        alert_after = timedelta(hours=self.config.BREAKER_OPEN_ALERT_HOURS)
        breakers = await self.repository.list_breakers()

        counts = {status.value: 0 for status in BreakerStatus}
        stuck_open = []
        for breaker in breakers:
            counts[breaker.state.value] += 1
            if (
                breaker.is_tripped()
                and breaker.opened_at is not None
                and now - breaker.opened_at > alert_after
            ):
                stuck_open.append(
                    {
                        "user_id": breaker.user_id,
                        "integration_type": breaker.integration_type.value,
                        "opened_at": breaker.opened_at.isoformat(),
                        "trip_count": breaker.trip_count,
                        "last_failure_reason": breaker.last_failure_reason,
                    }
                )

        for entry in stuck_open:
            logger.error(
                "Circuit breaker open beyond alert threshold",
                alert_after_hours=self.config.BREAKER_OPEN_ALERT_HOURS,
                **entry,
            )

        return {"by_state": counts, "open_beyond_threshold": stuck_open}

    async def token_summary(self) -> dict[str, Any]:
        counts = await self.repository.count_token_health_by_status()
        by_status = {status.value: counts.get(status.value, 0) for status in TokenStatus}
        return {"by_status": by_status, "invalid": by_status[TokenStatus.INVALID.value]}

    async def webhook_summary(self) -> dict[str, Any]:
        subscriptions = await self.repository.list_subscriptions()
        by_health = {health.value: 0 for health in SubscriptionHealth}
        for subscription in subscriptions:
            by_health[self.webhooks.classify(subscription).value] += 1

        return {
            "by_health": by_health,
            "silent": by_health[SubscriptionHealth.SILENT.value],
            "expiring": by_health[SubscriptionHealth.EXPIRING.value],
            "notifications": await self.webhooks.failure_rate(),
        }

    async def get_sync_health(self) -> dict[str, Any]:
        """
        Full operator report.

        Returns:
            Dict: breaker, token, webhook and 24h success-rate sections plus
            an overall healthy flag
        """
        report: dict[str, Any] = {
            "healthy": True,
            "service": "sync_reliability",
            "timestamp": self.clock().isoformat(),
            "components": {},
        }

        sections = {
            "circuit_breakers": self.breaker_summary,
            "token_health": self.token_summary,
            "webhooks": self.webhook_summary,
            "success_rate_24h": self.metrics.success_rate,
        }
        for name, load in sections.items():
            try:
                report["components"][name] = await load()
            except Exception as e:
                logger.error(
                    "Sync health section failed",
                    section=name,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                report["components"][name] = {"error": str(e)}
                report["healthy"] = False

        components = report["components"]
        if components.get("circuit_breakers", {}).get("open_beyond_threshold"):
            report["healthy"] = False
        if components.get("webhooks", {}).get("notifications", {}).get("is_high"):
            report["healthy"] = False

        return report
