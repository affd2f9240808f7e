"""
Tests for token health tracking, refresh and re-auth notification.
"""

from datetime import timedelta

import pytest

from syncguard.models.domain.collaborators import RefreshError
from syncguard.models.domain.sync_domain import TokenStatus
from syncguard.services.token_health_monitor import TokenCheckOutcome


@pytest.mark.asyncio
async def test_healthy_token_returned_without_refresh(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(hours=1))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)

    check = await c.token_monitor.get_usable_token(calendar_key)

    assert check.usable
    assert check.token.access_token == token.access_token
    assert c.token_provider.refresh_calls == 0


@pytest.mark.asyncio
async def test_refreshes_inside_lead_window(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(minutes=10))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)

    check = await c.token_monitor.get_usable_token(calendar_key)
    health = await c.token_monitor.get_health(calendar_key)

    assert check.usable
    assert check.token.access_token.startswith("refreshed-")
    assert c.token_provider.refresh_calls == 1
    assert health.status == TokenStatus.HEALTHY
    assert health.expires_at == c.clock() + timedelta(hours=1)


@pytest.mark.asyncio
async def test_retryable_failure_below_threshold_keeps_cached_token(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(minutes=10))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)
    c.token_provider.refresh_outcomes = [RefreshError("network", retryable=True)]

    check = await c.token_monitor.get_usable_token(calendar_key)
    health = await c.token_monitor.get_health(calendar_key)

    assert check.usable
    assert check.token.access_token == token.access_token
    assert health.status == TokenStatus.EXPIRING_SOON
    assert health.consecutive_refresh_failures == 1


@pytest.mark.asyncio
async def test_retryable_failures_past_threshold_mark_expired(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(minutes=10))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)
    c.token_provider.refresh_outcomes = [RefreshError("network", retryable=True)] * 3

    outcomes = [(await c.token_monitor.get_usable_token(calendar_key)).outcome for _ in range(3)]
    health = await c.token_monitor.get_health(calendar_key)

    assert outcomes[:2] == [TokenCheckOutcome.USABLE, TokenCheckOutcome.USABLE]
    assert outcomes[2] == TokenCheckOutcome.REFRESH_REQUIRED
    assert health.status == TokenStatus.EXPIRED
    assert c.sink.sent == []


@pytest.mark.asyncio
async def test_retryable_failure_after_expiry_marks_expired(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(minutes=5))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)
    c.clock.advance(minutes=6)
    c.token_provider.refresh_outcomes = [RefreshError("503", retryable=True)]

    check = await c.token_monitor.get_usable_token(calendar_key)

    assert check.outcome == TokenCheckOutcome.REFRESH_REQUIRED
    assert (await c.token_monitor.get_health(calendar_key)).status == TokenStatus.EXPIRED


@pytest.mark.asyncio
async def test_non_retryable_failure_marks_invalid_and_notifies_once(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(minutes=5))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)
    c.token_provider.refresh_outcomes = [RefreshError("invalid_grant", retryable=False)]

    first = await c.token_monitor.get_usable_token(calendar_key)
    second = await c.token_monitor.get_usable_token(calendar_key)

    assert first.outcome == TokenCheckOutcome.INVALID
    assert second.outcome == TokenCheckOutcome.INVALID
    assert c.token_provider.refresh_calls == 1
    assert len(c.repo.notifications) == 1
    assert len(c.sink.sent) == 1
    assert c.sink.sent[0].reauth_url == c.config.reauth_url("calendar")


@pytest.mark.asyncio
async def test_invalid_is_sticky_until_reauthenticated(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(minutes=5))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)
    c.token_provider.refresh_outcomes = [RefreshError("invalid_grant", retryable=False)]
    await c.token_monitor.get_usable_token(calendar_key)

    assert await c.token_monitor.sweep_key(calendar_key) == TokenStatus.INVALID

    new_token = c.token_provider.set_token(calendar_key, timedelta(hours=1))
    await c.token_monitor.on_reauthenticated(calendar_key, new_token.expires_at)

    check = await c.token_monitor.get_usable_token(calendar_key)
    assert check.usable
    assert c.repo.notifications[0].resolved_at == c.clock()


@pytest.mark.asyncio
async def test_auth_failure_forces_refresh(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(hours=1))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)

    check = await c.token_monitor.report_auth_failure(calendar_key, "auth_invalid")

    assert check.usable
    assert c.token_provider.refresh_calls == 1


@pytest.mark.asyncio
async def test_sweep_rederives_stale_status(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(hours=30))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)

    c.clock.advance(hours=13)
    assert await c.token_monitor.sweep_key(calendar_key) == TokenStatus.HEALTHY
    assert c.token_provider.refresh_calls == 0

    c.clock.advance(hours=16, minutes=50)
    assert await c.token_monitor.sweep_key(calendar_key) == TokenStatus.HEALTHY
    assert c.token_provider.refresh_calls == 1


@pytest.mark.asyncio
async def test_status_never_moves_backward_without_refresh(components, calendar_key):
    c = components
    token = c.token_provider.set_token(calendar_key, timedelta(minutes=10))
    await c.token_monitor.on_grant(calendar_key, token.expires_at)
    c.token_provider.refresh_outcomes = [RefreshError("network", retryable=True)] * 3
    for _ in range(3):
        await c.token_monitor.get_usable_token(calendar_key)

    health = await c.token_monitor.get_health(calendar_key)
    # Pretend the provider extended expiry out of band; derivation alone cannot undo Expired
    health.expires_at = c.clock() + timedelta(days=1)

    assert health.derive_status(c.clock(), c.token_monitor.lead_window) == TokenStatus.EXPIRED
