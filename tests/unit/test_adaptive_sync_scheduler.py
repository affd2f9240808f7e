"""
Tests for adaptive interval selection and schedule persistence.
"""

from datetime import timedelta

import pytest

from syncguard.models.domain.sync_domain import (
    BreakerStatus,
    CircuitBreakerState,
    IntegrationType,
    SubscriptionHealth,
    SyncSchedule,
    TokenHealth,
    TokenStatus,
)
from syncguard.services.adaptive_sync_scheduler import AdaptiveSyncScheduler, frequency_bounds_for


@pytest.fixture
def scheduler(locks, repo, test_settings, clock):
    return AdaptiveSyncScheduler(locks, repository=repo, config=test_settings, clock=clock)


def _schedule(key, onboarding_until=None):
    return SyncSchedule(
        user_id=key.user_id, integration_type=key.integration_type, onboarding_until=onboarding_until
    )


def _open_breaker(key, now, trip_count=1, next_probe_in=timedelta(minutes=1)):
    return CircuitBreakerState(
        user_id=key.user_id,
        integration_type=key.integration_type,
        state=BreakerStatus.OPEN,
        trip_count=trip_count,
        opened_at=now,
        next_probe_at=now + next_probe_in,
    )


def test_default_polling_without_webhook(scheduler, calendar_key, clock):
    plan = scheduler.plan(calendar_key, _schedule(calendar_key), clock())

    assert plan.interval == timedelta(hours=12)
    assert plan.next_sync_at == clock() + timedelta(hours=12)


def test_healthy_webhook_uses_fallback(scheduler, calendar_key, clock):
    plan = scheduler.plan(
        calendar_key,
        _schedule(calendar_key),
        clock(),
        webhook_health=SubscriptionHealth.HEALTHY,
    )

    assert plan.interval == timedelta(hours=24)
    assert plan.tier == "webhook_fallback"


@pytest.mark.parametrize("health", [SubscriptionHealth.SILENT, SubscriptionHealth.EXPIRED])
def test_unhealthy_webhook_polls_at_default(scheduler, calendar_key, clock, health):
    plan = scheduler.plan(calendar_key, _schedule(calendar_key), clock(), webhook_health=health)

    assert plan.interval == timedelta(hours=12)


def test_onboarding_wins_over_everything(scheduler, contacts_key, clock):
    schedule = _schedule(contacts_key, onboarding_until=clock() + timedelta(hours=3))

    plan = scheduler.plan(contacts_key, schedule, clock())

    assert plan.interval == timedelta(hours=1)
    assert plan.tier == "onboarding"


def test_onboarding_ends_at_window(scheduler, contacts_key, clock):
    schedule = _schedule(contacts_key, onboarding_until=clock())

    plan = scheduler.plan(contacts_key, schedule, clock())

    assert plan.interval == timedelta(hours=168)


def test_breaker_backoff_multiplies_and_clamps(scheduler, calendar_key, clock):
    breaker = _open_breaker(calendar_key, clock(), trip_count=3)

    plan = scheduler.plan(calendar_key, _schedule(calendar_key), clock(), breaker=breaker)

    # 12h * 4 = 48h, exactly the calendar max
    assert plan.interval == timedelta(hours=48)

    breaker.trip_count = 4
    plan = scheduler.plan(calendar_key, _schedule(calendar_key), clock(), breaker=breaker)
    assert plan.interval == timedelta(hours=48)


def test_next_probe_floor_applied_after_clamp(scheduler, contacts_key, clock):
    schedule = _schedule(contacts_key, onboarding_until=clock() + timedelta(hours=3))
    breaker = _open_breaker(contacts_key, clock(), next_probe_in=timedelta(hours=5))

    plan = scheduler.plan(contacts_key, schedule, clock(), breaker=breaker)

    assert plan.interval == timedelta(hours=1)
    assert plan.next_sync_at == breaker.next_probe_at


def test_invalid_token_pauses(scheduler, calendar_key, clock):
    token = TokenHealth(
        user_id=calendar_key.user_id,
        integration_type=calendar_key.integration_type,
        status=TokenStatus.INVALID,
    )

    plan = scheduler.plan(calendar_key, _schedule(calendar_key), clock(), token_health=token)

    assert plan.next_sync_at is None
    assert plan.paused_reason == "token_invalid"


def test_expired_token_disables_onboarding_and_backs_off(scheduler, calendar_key, clock):
    schedule = _schedule(calendar_key, onboarding_until=clock() + timedelta(hours=3))
    token = TokenHealth(
        user_id=calendar_key.user_id,
        integration_type=calendar_key.integration_type,
        status=TokenStatus.EXPIRED,
    )

    plan = scheduler.plan(calendar_key, schedule, clock(), token_health=token)

    assert plan.interval == timedelta(hours=24)


def test_no_change_streak_stretches_default_interval(scheduler, calendar_key, clock):
    schedule = _schedule(calendar_key)
    schedule.consecutive_no_changes = 4
    assert scheduler.plan(calendar_key, schedule, clock()).interval == timedelta(hours=12)

    schedule.consecutive_no_changes = 5
    plan = scheduler.plan(calendar_key, schedule, clock())
    assert plan.interval == timedelta(hours=18)
    assert plan.tier == "default+idle_stretch"

    schedule.consecutive_no_changes = 10
    assert scheduler.plan(calendar_key, schedule, clock()).interval == timedelta(hours=27)

    schedule.consecutive_no_changes = 50
    assert scheduler.plan(calendar_key, schedule, clock()).interval == timedelta(hours=48)


def test_onboarding_interval_never_stretched(scheduler, contacts_key, clock):
    schedule = _schedule(contacts_key, onboarding_until=clock() + timedelta(hours=3))
    schedule.consecutive_no_changes = 15

    plan = scheduler.plan(contacts_key, schedule, clock())

    assert plan.interval == timedelta(hours=1)
    assert plan.tier == "onboarding"


@pytest.mark.parametrize("integration_type", list(IntegrationType))
def test_bounds_are_ordered(test_settings, integration_type):
    bounds = frequency_bounds_for(integration_type, test_settings)

    assert bounds.min <= bounds.onboarding <= bounds.default <= bounds.max
    assert bounds.default <= bounds.webhook_fallback <= bounds.max


@pytest.mark.asyncio
async def test_initialize_schedule_due_now(scheduler, calendar_key, clock, repo):
    schedule = await scheduler.initialize_schedule(calendar_key)

    assert schedule.next_sync_at == clock()
    assert schedule.onboarding_until == clock() + timedelta(hours=24)
    assert await scheduler.get_due_keys(10) == [calendar_key]


@pytest.mark.asyncio
async def test_next_sync_time_persists_from_state(scheduler, calendar_key, clock, repo):
    await scheduler.initialize_schedule(calendar_key, onboarding=False)
    attempted_at = clock()
    clock.advance(seconds=30)

    next_sync_at = await scheduler.next_sync_time(calendar_key, attempted_at=attempted_at)
    stored = await repo.get_schedule(calendar_key)

    assert next_sync_at == clock() + timedelta(hours=12)
    assert stored.next_sync_at == next_sync_at
    assert stored.last_sync_at == attempted_at
    assert stored.frequency_ms == 12 * 3600 * 1000
    assert await scheduler.get_due_keys(10) == []


@pytest.mark.asyncio
async def test_next_sync_time_tracks_no_change_streak(scheduler, calendar_key, clock, repo):
    await scheduler.initialize_schedule(calendar_key, onboarding=False)

    for _ in range(5):
        next_sync_at = await scheduler.next_sync_time(calendar_key, changes_detected=False)
    assert next_sync_at == clock() + timedelta(hours=18)

    await scheduler.next_sync_time(calendar_key)
    assert (await repo.get_schedule(calendar_key)).consecutive_no_changes == 5

    next_sync_at = await scheduler.next_sync_time(calendar_key, changes_detected=True)
    assert next_sync_at == clock() + timedelta(hours=12)
    assert (await repo.get_schedule(calendar_key)).consecutive_no_changes == 0


@pytest.mark.asyncio
async def test_next_sync_time_without_schedule_is_noop(scheduler, calendar_key, repo):
    assert await scheduler.next_sync_time(calendar_key) is None
    assert repo.schedules == {}
