"""
Postgres repository for per-(user, integration) sync reliability state.

Four keyed tables (breaker, token health, schedule, subscription) plus the
append-only sync metric log and the notification side tables. Callers hold
the per-key lock while they read-modify-write a row.
"""

from datetime import datetime
from typing import Any

from syncguard.db.helpers import execute_query, execute_transaction, fetch_all, fetch_one, with_db_retry
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.sync_domain import (
    CircuitBreakerState,
    IntegrationType,
    SyncKey,
    SyncMetric,
    SyncSchedule,
    TokenHealth,
    TokenHealthNotification,
    WebhookSubscription,
)

logger = get_logger(__name__)


def _key_params(key: SyncKey) -> tuple[str, str]:
    return (key.user_id, key.integration_type.value)


class SyncStateRepository:
    """Persistence helpers for the sync reliability tables."""

    # ------------------------------------------------------------------
    # circuit_breaker_state
    # ------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def get_breaker(key: SyncKey) -> CircuitBreakerState | None:
        query = """
            SELECT user_id, integration_type, state, consecutive_failures, trip_count,
                   last_failure_at, last_failure_reason, opened_at, next_probe_at,
                   probe_started_at, updated_at
            FROM circuit_breaker_state
            WHERE user_id = %s AND integration_type = %s
        """
        row = await fetch_one(query, _key_params(key))
        return CircuitBreakerState(**row) if row else None

    @staticmethod
    @with_db_retry()
    async def save_breaker(breaker: CircuitBreakerState) -> None:
        query = """
            INSERT INTO circuit_breaker_state (
                user_id, integration_type, state, consecutive_failures, trip_count,
                last_failure_at, last_failure_reason, opened_at, next_probe_at,
                probe_started_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id, integration_type)
            DO UPDATE SET
                state = EXCLUDED.state,
                consecutive_failures = EXCLUDED.consecutive_failures,
                trip_count = EXCLUDED.trip_count,
                last_failure_at = EXCLUDED.last_failure_at,
                last_failure_reason = EXCLUDED.last_failure_reason,
                opened_at = EXCLUDED.opened_at,
                next_probe_at = EXCLUDED.next_probe_at,
                probe_started_at = EXCLUDED.probe_started_at,
                updated_at = NOW()
        """
        await execute_query(
            query,
            (
                breaker.user_id,
                breaker.integration_type.value,
                breaker.state.value,
                breaker.consecutive_failures,
                breaker.trip_count,
                breaker.last_failure_at,
                breaker.last_failure_reason,
                breaker.opened_at,
                breaker.next_probe_at,
                breaker.probe_started_at,
            ),
        )

    @staticmethod
    @with_db_retry()
    async def list_breakers() -> list[CircuitBreakerState]:
        query = """
            SELECT user_id, integration_type, state, consecutive_failures, trip_count,
                   last_failure_at, last_failure_reason, opened_at, next_probe_at,
                   probe_started_at, updated_at
            FROM circuit_breaker_state
        """
        rows = await fetch_all(query)
        return [CircuitBreakerState(**row) for row in rows]

    # ------------------------------------------------------------------
    # token_health
    # ------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def get_token_health(key: SyncKey) -> TokenHealth | None:
        query = """
            SELECT user_id, integration_type, status, expires_at, consecutive_refresh_failures,
                   last_refresh_at, last_checked_at, error_message, updated_at
            FROM token_health
            WHERE user_id = %s AND integration_type = %s
        """
        row = await fetch_one(query, _key_params(key))
        return TokenHealth(**row) if row else None

    @staticmethod
    @with_db_retry()
    async def save_token_health(health: TokenHealth) -> None:
        query = """
            INSERT INTO token_health (
                user_id, integration_type, status, expires_at, consecutive_refresh_failures,
                last_refresh_at, last_checked_at, error_message, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, NOW())
            ON CONFLICT (user_id, integration_type)
            DO UPDATE SET
                status = EXCLUDED.status,
                expires_at = EXCLUDED.expires_at,
                consecutive_refresh_failures = EXCLUDED.consecutive_refresh_failures,
                last_refresh_at = EXCLUDED.last_refresh_at,
                last_checked_at = EXCLUDED.last_checked_at,
                error_message = EXCLUDED.error_message,
                updated_at = NOW()
        """
        await execute_query(
            query,
            (
                health.user_id,
                health.integration_type.value,
                health.status.value,
                health.expires_at,
                health.consecutive_refresh_failures,
                health.last_refresh_at,
                health.last_checked_at,
                (health.error_message or "")[:500] or None,
            ),
        )

    @staticmethod
    @with_db_retry()
    async def list_token_health_for_sweep(
        stale_before: datetime, expiring_before: datetime, limit: int
    ) -> list[TokenHealth]:
        """Keys untouched since stale_before or expiring before expiring_before."""
        query = """
            SELECT user_id, integration_type, status, expires_at, consecutive_refresh_failures,
                   last_refresh_at, last_checked_at, error_message, updated_at
            FROM token_health
            WHERE status <> 'invalid'
              AND (last_checked_at IS NULL
                   OR last_checked_at < %s
                   OR expires_at <= %s)
            ORDER BY expires_at ASC NULLS LAST
            LIMIT %s
        """
        rows = await fetch_all(query, (stale_before, expiring_before, limit))
        return [TokenHealth(**row) for row in rows]

    @staticmethod
    @with_db_retry()
    async def count_token_health_by_status() -> dict[str, int]:
        rows = await fetch_all("SELECT status, COUNT(*) AS total FROM token_health GROUP BY status")
        return {row["status"]: row["total"] for row in rows}

    # ------------------------------------------------------------------
    # sync_schedule
    # ------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def get_schedule(key: SyncKey) -> SyncSchedule | None:
        query = """
            SELECT user_id, integration_type, last_sync_at, next_sync_at, frequency_ms,
                   onboarding_until, paused_reason, consecutive_no_changes, created_at, updated_at
            FROM sync_schedule
            WHERE user_id = %s AND integration_type = %s
        """
        row = await fetch_one(query, _key_params(key))
        return SyncSchedule(**row) if row else None

    @staticmethod
    @with_db_retry()
    async def save_schedule(schedule: SyncSchedule) -> None:
        query = """
            INSERT INTO sync_schedule (
                user_id, integration_type, last_sync_at, next_sync_at, frequency_ms,
                onboarding_until, paused_reason, consecutive_no_changes, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()), NOW())
            ON CONFLICT (user_id, integration_type)
            DO UPDATE SET
                last_sync_at = EXCLUDED.last_sync_at,
                next_sync_at = EXCLUDED.next_sync_at,
                frequency_ms = EXCLUDED.frequency_ms,
                onboarding_until = EXCLUDED.onboarding_until,
                paused_reason = EXCLUDED.paused_reason,
                consecutive_no_changes = EXCLUDED.consecutive_no_changes,
                updated_at = NOW()
        """
        await execute_query(
            query,
            (
                schedule.user_id,
                schedule.integration_type.value,
                schedule.last_sync_at,
                schedule.next_sync_at,
                schedule.frequency_ms,
                schedule.onboarding_until,
                schedule.paused_reason,
                schedule.consecutive_no_changes,
                schedule.created_at,
            ),
        )

    @staticmethod
    @with_db_retry()
    async def list_due_schedules(now: datetime, limit: int) -> list[SyncSchedule]:
        query = """
            SELECT user_id, integration_type, last_sync_at, next_sync_at, frequency_ms,
                   onboarding_until, paused_reason, consecutive_no_changes, created_at, updated_at
            FROM sync_schedule
            WHERE next_sync_at IS NOT NULL AND next_sync_at <= %s
            ORDER BY next_sync_at ASC
            LIMIT %s
        """
        rows = await fetch_all(query, (now, limit))
        return [SyncSchedule(**row) for row in rows]

    @staticmethod
    @with_db_retry()
    async def list_schedule_keys(integration_type: IntegrationType | None = None) -> list[SyncKey]:
        """Every connected key, optionally for one integration."""
        if integration_type is None:
            rows = await fetch_all("SELECT user_id, integration_type FROM sync_schedule")
        else:
            rows = await fetch_all(
                "SELECT user_id, integration_type FROM sync_schedule WHERE integration_type = %s",
                (integration_type.value,),
            )
        return [SyncKey(row["user_id"], IntegrationType(row["integration_type"])) for row in rows]

    # ------------------------------------------------------------------
    # webhook_subscriptions
    # ------------------------------------------------------------------

    _SUBSCRIPTION_COLUMNS = """
        user_id, integration_type, channel_id, resource_id, channel_token, expires_at,
        last_notification_at, registration_attempts, created_at
    """

    @staticmethod
    @with_db_retry()
    async def get_subscription(key: SyncKey) -> WebhookSubscription | None:
        query = f"""
            SELECT {SyncStateRepository._SUBSCRIPTION_COLUMNS}
            FROM webhook_subscriptions
            WHERE user_id = %s AND integration_type = %s
        """
        row = await fetch_one(query, _key_params(key))
        return WebhookSubscription(**row) if row else None

    @staticmethod
    @with_db_retry()
    async def get_subscription_by_channel(channel_id: str) -> WebhookSubscription | None:
        query = f"""
            SELECT {SyncStateRepository._SUBSCRIPTION_COLUMNS}
            FROM webhook_subscriptions
            WHERE channel_id = %s
        """
        row = await fetch_one(query, (channel_id,))
        return WebhookSubscription(**row) if row else None

    @staticmethod
    @with_db_retry()
    async def save_subscription(subscription: WebhookSubscription) -> None:
        query = """
            INSERT INTO webhook_subscriptions (
                user_id, integration_type, channel_id, resource_id, channel_token, expires_at,
                last_notification_at, registration_attempts, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, integration_type)
            DO UPDATE SET
                channel_id = EXCLUDED.channel_id,
                resource_id = EXCLUDED.resource_id,
                channel_token = EXCLUDED.channel_token,
                expires_at = EXCLUDED.expires_at,
                last_notification_at = EXCLUDED.last_notification_at,
                registration_attempts = EXCLUDED.registration_attempts,
                created_at = EXCLUDED.created_at
        """
        await execute_query(
            query,
            (
                subscription.user_id,
                subscription.integration_type.value,
                subscription.channel_id,
                subscription.resource_id,
                subscription.channel_token,
                subscription.expires_at,
                subscription.last_notification_at,
                subscription.registration_attempts,
                subscription.created_at,
            ),
        )

    @staticmethod
    @with_db_retry()
    async def delete_subscription(key: SyncKey) -> None:
        await execute_query(
            "DELETE FROM webhook_subscriptions WHERE user_id = %s AND integration_type = %s",
            _key_params(key),
        )

    @staticmethod
    @with_db_retry()
    async def list_subscriptions() -> list[WebhookSubscription]:
        rows = await fetch_all(
            f"SELECT {SyncStateRepository._SUBSCRIPTION_COLUMNS} FROM webhook_subscriptions"
        )
        return [WebhookSubscription(**row) for row in rows]

    # ------------------------------------------------------------------
    # sync_metrics (append-only)
    # ------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def append_metric(metric: SyncMetric) -> None:
        query = """
            INSERT INTO sync_metrics (
                user_id, integration_type, sync_type, result, duration_ms, items_synced,
                error_class, skip_reason, error_message, timestamp
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        await execute_query(
            query,
            (
                metric.user_id,
                metric.integration_type.value,
                metric.sync_type.value,
                metric.result.value,
                metric.duration_ms,
                metric.items_synced,
                metric.error_class,
                metric.skip_reason.value if metric.skip_reason else None,
                (metric.error_message or "")[:500] or None,
                metric.timestamp,
            ),
        )

    @staticmethod
    @with_db_retry()
    async def list_metrics_since(
        since: datetime,
        key: SyncKey | None = None,
        integration_type: IntegrationType | None = None,
    ) -> list[SyncMetric]:
        conditions = ["timestamp >= %s"]
        params: list[Any] = [since]
        if key is not None:
            conditions.append("user_id = %s AND integration_type = %s")
            params.extend(_key_params(key))
        elif integration_type is not None:
            conditions.append("integration_type = %s")
            params.append(integration_type.value)

        query = f"""
            SELECT user_id, integration_type, sync_type, result, duration_ms, items_synced,
                   error_class, skip_reason, error_message, timestamp
            FROM sync_metrics
            WHERE {" AND ".join(conditions)}
            ORDER BY timestamp ASC
        """
        rows = await fetch_all(query, tuple(params))
        return [SyncMetric(**row) for row in rows]

    # ------------------------------------------------------------------
    # token_health_notifications
    # ------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def create_notification_if_absent(notification: TokenHealthNotification) -> bool:
        """Insert unless an unresolved notification of the same type exists. True if inserted."""
        query = """
            INSERT INTO token_health_notifications (
                user_id, integration_type, notification_type, message, reauth_url, created_at
            )
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, integration_type, notification_type)
                WHERE resolved_at IS NULL
            DO NOTHING
        """
        inserted = await execute_query(
            query,
            (
                notification.user_id,
                notification.integration_type.value,
                notification.notification_type,
                notification.message,
                notification.reauth_url,
                notification.created_at,
            ),
        )
        return inserted > 0

    @staticmethod
    @with_db_retry()
    async def resolve_notifications(key: SyncKey, resolved_at: datetime) -> int:
        query = """
            UPDATE token_health_notifications
            SET resolved_at = %s
            WHERE user_id = %s AND integration_type = %s AND resolved_at IS NULL
        """
        return await execute_query(query, (resolved_at, *_key_params(key)))

    # ------------------------------------------------------------------
    # webhook_notifications
    # ------------------------------------------------------------------

    @staticmethod
    @with_db_retry()
    async def record_webhook_event(
        channel_id: str,
        key: SyncKey | None,
        resource_state: str,
        result: str,
        received_at: datetime,
        error_message: str | None = None,
    ) -> None:
        query = """
            INSERT INTO webhook_notifications (
                channel_id, user_id, integration_type, resource_state, result,
                error_message, received_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s)
        """
        await execute_query(
            query,
            (
                channel_id,
                key.user_id if key else None,
                key.integration_type.value if key else None,
                resource_state,
                result,
                error_message,
                received_at,
            ),
        )

    @staticmethod
    @with_db_retry()
    async def count_webhook_events_since(since: datetime) -> dict[str, int]:
        query = """
            SELECT result, COUNT(*) AS total
            FROM webhook_notifications
            WHERE received_at >= %s
            GROUP BY result
        """
        rows = await fetch_all(query, (since,))
        return {row["result"]: row["total"] for row in rows}

    # ------------------------------------------------------------------
    # disconnect
    # ------------------------------------------------------------------

    @staticmethod
    async def clear_key(key: SyncKey) -> None:
        """Remove all keyed state for a disconnected integration in one transaction."""
        params = _key_params(key)
        await execute_transaction(
            [
                ("DELETE FROM sync_schedule WHERE user_id = %s AND integration_type = %s", params),
                (
                    "DELETE FROM circuit_breaker_state WHERE user_id = %s AND integration_type = %s",
                    params,
                ),
                ("DELETE FROM token_health WHERE user_id = %s AND integration_type = %s", params),
                (
                    "DELETE FROM webhook_subscriptions WHERE user_id = %s AND integration_type = %s",
                    params,
                ),
            ]
        )
        logger.info("Cleared sync state for disconnected integration", **key.log_fields())
