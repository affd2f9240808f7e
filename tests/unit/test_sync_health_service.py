from datetime import timedelta

import pytest

from syncguard.models.domain.sync_domain import BreakerStatus, CircuitBreakerState, SyncType
from syncguard.services.sync_health_service import SyncHealthService


@pytest.fixture
def health_service(components):
    c = components
    return SyncHealthService(
        c.metrics, c.webhooks, repository=c.repo, config=c.config, clock=c.clock
    )


async def _connect(c, key):
    token = c.token_provider.set_token(key, timedelta(hours=1))
    await c.orchestrator.connect_integration(key, token.expires_at)


@pytest.mark.asyncio
async def test_connected_key_reports_healthy(components, health_service, calendar_key):
    await _connect(components, calendar_key)

    report = await health_service.get_sync_health()
    sections = report["components"]

    assert report["healthy"] is True
    assert sections["circuit_breakers"]["by_state"]["closed"] == 1
    assert sections["token_health"]["by_status"]["healthy"] == 1
    assert sections["webhooks"]["by_health"]["healthy"] == 1
    assert sections["success_rate_24h"]["success_rate"] == 1.0


@pytest.mark.asyncio
async def test_breaker_open_past_alert_threshold_unhealthy(components, health_service, calendar_key):
    c = components
    await c.repo.save_breaker(
        CircuitBreakerState(
            user_id=calendar_key.user_id,
            integration_type=calendar_key.integration_type,
            state=BreakerStatus.OPEN,
            trip_count=4,
            opened_at=c.clock(),
            next_probe_at=c.clock() + timedelta(minutes=8),
            last_failure_reason="transient",
        )
    )

    c.clock.advance(hours=5)
    assert (await health_service.get_sync_health())["healthy"] is True

    c.clock.advance(hours=2)
    report = await health_service.get_sync_health()

    assert report["healthy"] is False
    stuck = report["components"]["circuit_breakers"]["open_beyond_threshold"]
    assert stuck[0]["user_id"] == calendar_key.user_id
    assert stuck[0]["trip_count"] == 4


@pytest.mark.asyncio
async def test_failed_section_marks_report_unhealthy(components, health_service, monkeypatch):
    async def broken():
        raise RuntimeError("db unavailable")

    monkeypatch.setattr(components.repo, "count_token_health_by_status", broken)

    report = await health_service.get_sync_health()

    assert report["healthy"] is False
    assert report["components"]["token_health"] == {"error": "db unavailable"}
    assert "circuit_breakers" in report["components"]


@pytest.mark.asyncio
async def test_skipped_attempts_do_not_lower_success_rate(components, health_service, calendar_key):
    c = components
    await _connect(c, calendar_key)
    await c.orchestrator.shutdown(grace_seconds=0)
    await c.orchestrator.run_sync(calendar_key, SyncType.INCREMENTAL)

    rate = (await health_service.get_sync_health())["components"]["success_rate_24h"]

    assert rate["skipped"] == 1
    assert rate["success_rate"] == 1.0
