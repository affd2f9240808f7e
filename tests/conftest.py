import asyncio
from datetime import UTC, datetime, timedelta
from types import SimpleNamespace

import pytest

from syncguard.config import Settings
from syncguard.models.domain.collaborators import ChannelRegistration, SyncResult, Token
from syncguard.models.domain.sync_domain import (
    IntegrationType,
    SyncKey,
    SyncMetric,
    TokenHealthNotification,
)
from syncguard.runtime import SyncCollaborators, build_orchestrator
from syncguard.services.infrastructure.key_locks import LocalKeyLockManager

START = datetime(2026, 3, 2, 9, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock; advance it explicitly."""

    def __init__(self, now: datetime = START):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class FakeSyncStateRepository:
    """In-memory stand-in for SyncStateRepository with the same method surface."""

    def __init__(self):
        self.breakers = {}
        self.tokens = {}
        self.schedules = {}
        self.subscriptions = {}
        self.metrics: list[SyncMetric] = []
        self.notifications: list[TokenHealthNotification] = []
        self.webhook_events: list[dict] = []
        self.fail_metrics = False

    # breaker
    async def get_breaker(self, key):
        row = self.breakers.get(key)
        return row.model_copy(deep=True) if row else None

    async def save_breaker(self, breaker):
        self.breakers[breaker.key] = breaker.model_copy(deep=True)

    async def list_breakers(self):
        return [b.model_copy(deep=True) for b in self.breakers.values()]

    # token health
    async def get_token_health(self, key):
        row = self.tokens.get(key)
        return row.model_copy(deep=True) if row else None

    async def save_token_health(self, health):
        self.tokens[health.key] = health.model_copy(deep=True)

    async def list_token_health_for_sweep(self, stale_before, expiring_before, limit):
        rows = [
            h
            for h in self.tokens.values()
            if h.status.value != "invalid"
            and (
                h.last_checked_at is None
                or h.last_checked_at < stale_before
                or (h.expires_at is not None and h.expires_at <= expiring_before)
            )
        ]
        return [h.model_copy(deep=True) for h in rows[:limit]]

    async def count_token_health_by_status(self):
        counts: dict[str, int] = {}
        for health in self.tokens.values():
            counts[health.status.value] = counts.get(health.status.value, 0) + 1
        return counts

    # schedule
    async def get_schedule(self, key):
        row = self.schedules.get(key)
        return row.model_copy(deep=True) if row else None

    async def save_schedule(self, schedule):
        self.schedules[schedule.key] = schedule.model_copy(deep=True)

    async def list_due_schedules(self, now, limit):
        due = sorted(
            (s for s in self.schedules.values() if s.next_sync_at and s.next_sync_at <= now),
            key=lambda s: s.next_sync_at,
        )
        return [s.model_copy(deep=True) for s in due[:limit]]

    async def list_schedule_keys(self, integration_type=None):
        return [
            key
            for key in self.schedules
            if integration_type is None or key.integration_type == integration_type
        ]

    # subscriptions
    async def get_subscription(self, key):
        row = self.subscriptions.get(key)
        return row.model_copy(deep=True) if row else None

    async def get_subscription_by_channel(self, channel_id):
        for row in self.subscriptions.values():
            if row.channel_id == channel_id:
                return row.model_copy(deep=True)
        return None

    async def save_subscription(self, subscription):
        self.subscriptions[subscription.key] = subscription.model_copy(deep=True)

    async def delete_subscription(self, key):
        self.subscriptions.pop(key, None)

    async def list_subscriptions(self):
        return [s.model_copy(deep=True) for s in self.subscriptions.values()]

    # metrics
    async def append_metric(self, metric):
        if self.fail_metrics:
            raise RuntimeError("metrics store down")
        self.metrics.append(metric)

    async def list_metrics_since(self, since, key=None, integration_type=None):
        rows = [m for m in self.metrics if m.timestamp >= since]
        if key is not None:
            rows = [
                m
                for m in rows
                if m.user_id == key.user_id and m.integration_type == key.integration_type
            ]
        elif integration_type is not None:
            rows = [m for m in rows if m.integration_type == integration_type]
        return rows

    # notifications
    async def create_notification_if_absent(self, notification):
        for existing in self.notifications:
            if (
                existing.user_id == notification.user_id
                and existing.integration_type == notification.integration_type
                and existing.notification_type == notification.notification_type
                and existing.resolved_at is None
            ):
                return False
        self.notifications.append(notification.model_copy(deep=True))
        return True

    async def resolve_notifications(self, key, resolved_at):
        resolved = 0
        for notification in self.notifications:
            if (
                notification.user_id == key.user_id
                and notification.integration_type == key.integration_type
                and notification.resolved_at is None
            ):
                notification.resolved_at = resolved_at
                resolved += 1
        return resolved

    # webhook events
    async def record_webhook_event(
        self, channel_id, key, resource_state, result, received_at, error_message=None
    ):
        self.webhook_events.append(
            {
                "channel_id": channel_id,
                "key": key,
                "resource_state": resource_state,
                "result": result,
                "error_message": error_message,
                "received_at": received_at,
            }
        )

    async def count_webhook_events_since(self, since):
        counts: dict[str, int] = {}
        for event in self.webhook_events:
            if event["received_at"] >= since:
                counts[event["result"]] = counts.get(event["result"], 0) + 1
        return counts

    async def clear_key(self, key):
        for table in (self.schedules, self.breakers, self.tokens, self.subscriptions):
            table.pop(key, None)


class FakeTokenProvider:
    """Stored tokens per key; refresh returns queued outcomes (Token or exception)."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.tokens: dict[tuple[str, IntegrationType], Token] = {}
        self.refresh_outcomes: list = []
        self.refresh_calls = 0

    def set_token(self, key: SyncKey, expires_in: timedelta = timedelta(hours=1)) -> Token:
        token = Token(access_token=f"access-{key.user_id}", expires_at=self.clock() + expires_in)
        self.tokens[(key.user_id, key.integration_type)] = token
        return token

    async def get_token(self, user_id, integration_type):
        return self.tokens.get((user_id, integration_type))

    async def refresh(self, user_id, integration_type):
        self.refresh_calls += 1
        outcome = (
            self.refresh_outcomes.pop(0)
            if self.refresh_outcomes
            else Token(access_token=f"refreshed-{user_id}", expires_at=self.clock() + timedelta(hours=1))
        )
        if isinstance(outcome, Exception):
            raise outcome
        self.tokens[(user_id, integration_type)] = outcome
        return outcome


class FakeExecutor:
    """Sync executor returning queued outcomes; optionally blocks until released."""

    def __init__(self):
        self.outcomes: list = []
        self.calls: list[dict] = []
        self.gate: asyncio.Event | None = None
        self.started = asyncio.Event()

    async def run(self, user_id, integration_type, sync_type, *, access_token):
        self.calls.append(
            {
                "user_id": user_id,
                "integration_type": integration_type,
                "sync_type": sync_type,
                "access_token": access_token,
            }
        )
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if self.outcomes else SyncResult(items_synced=3)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeSubscriptionProvider:
    """Push channel provider; watch returns queued outcomes (exception or default registration)."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self.watch_outcomes: list = []
        self.watch_calls: list[dict] = []
        self.stopped: list[str] = []

    async def watch(self, user_id, access_token, channel_id, channel_token):
        self.watch_calls.append(
            {"user_id": user_id, "channel_id": channel_id, "channel_token": channel_token}
        )
        outcome = self.watch_outcomes.pop(0) if self.watch_outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return ChannelRegistration(
            channel_id=channel_id,
            resource_id=f"resource-{user_id}",
            expires_at=self.clock() + timedelta(days=7),
        )

    async def stop(self, channel_id, resource_id, access_token):
        self.stopped.append(channel_id)


class RecordingSink:
    def __init__(self):
        self.sent: list[TokenHealthNotification] = []

    async def notify(self, notification):
        self.sent.append(notification)


class RecordingSleep:
    """Replaces asyncio.sleep for backoff waits; records the requested delays."""

    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def repo():
    return FakeSyncStateRepository()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        LOCK_BACKEND="local",
        SWEEP_BATCH_PAUSE_SECONDS=0,
        INTERNAL_API_TOKEN="internal-secret",
    )


@pytest.fixture
def locks():
    return LocalKeyLockManager(acquire_timeout=2.0)


@pytest.fixture
def calendar_key():
    return SyncKey("user-123", IntegrationType.CALENDAR)


@pytest.fixture
def contacts_key():
    return SyncKey("user-123", IntegrationType.CONTACTS)


@pytest.fixture
def components(clock, repo, test_settings, locks):
    """Fully wired orchestrator over in-memory fakes."""
    token_provider = FakeTokenProvider(clock)
    executor = FakeExecutor()
    calendar_push = FakeSubscriptionProvider(clock)
    sink = RecordingSink()

    orchestrator = build_orchestrator(
        SyncCollaborators(
            token_provider=token_provider,
            executor=executor,
            subscription_providers={IntegrationType.CALENDAR: calendar_push},
            notification_sink=sink,
        ),
        locks=locks,
        repository=repo,
        config=test_settings,
        clock=clock,
    )
    sleep = RecordingSleep()
    orchestrator.webhooks.sleep = sleep

    c = SimpleNamespace()
    c.orchestrator = orchestrator
    c.breaker = orchestrator.breaker
    c.token_monitor = orchestrator.token_monitor
    c.webhooks = orchestrator.webhooks
    c.scheduler = orchestrator.scheduler
    c.metrics = orchestrator.metrics
    c.token_provider = token_provider
    c.executor = executor
    c.calendar_push = calendar_push
    c.sink = sink
    c.sleep = sleep
    c.repo = repo
    c.clock = clock
    c.config = test_settings
    return c
