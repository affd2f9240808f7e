import asyncio
from datetime import timedelta

import pytest

from syncguard.jobs.sweep_runner import SweepRunner
from syncguard.models.domain.sync_domain import IntegrationType, SyncKey


def _keys(count):
    return [SyncKey(f"user-{i}", IntegrationType.CALENDAR) for i in range(count)]


@pytest.fixture
def runner(test_settings, clock):
    test_settings.SWEEP_BATCH_SIZE = 2
    test_settings.SWEEP_MAX_CONCURRENCY = 2
    return SweepRunner("adaptive_sync", timedelta(minutes=15), config=test_settings, clock=clock)


@pytest.mark.asyncio
async def test_processes_every_key(runner):
    seen = []

    async def handler(key):
        seen.append(key.user_id)

    result = await runner.run(_keys(5), handler)

    assert sorted(seen) == [f"user-{i}" for i in range(5)]
    assert result["keys_processed"] == 5
    assert result["succeeded"] == 5
    assert result["success_rate_percent"] == 100.0


@pytest.mark.asyncio
async def test_failures_isolated_per_key(runner):
    async def handler(key):
        if key.user_id == "user-1":
            raise RuntimeError("provider down")

    result = await runner.run(_keys(3), handler)

    assert result["succeeded"] == 2
    assert result["failed"] == 1
    assert result["errors_count"] == 1


@pytest.mark.asyncio
async def test_hung_key_times_out(runner, test_settings):
    test_settings.SWEEP_TASK_TIMEOUT_SECONDS = 0.01

    async def handler(key):
        if key.user_id == "user-0":
            await asyncio.Event().wait()

    result = await runner.run(_keys(2), handler)

    assert result["timed_out"] == 1
    assert result["succeeded"] == 1


@pytest.mark.asyncio
async def test_concurrency_bounded(runner):
    active = 0
    peak = 0

    async def handler(key):
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001)
        active -= 1

    await runner.run(_keys(6), handler)

    assert peak <= 2


@pytest.mark.asyncio
async def test_overlapping_run_skipped(runner):
    release = asyncio.Event()

    async def handler(key):
        await release.wait()

    first = asyncio.create_task(runner.run(_keys(1), handler))
    await asyncio.sleep(0)
    second = await runner.run(_keys(1), handler)
    release.set()
    await first

    assert second == {"job_run": "adaptive_sync", "skipped": True, "reason": "already_running"}


@pytest.mark.asyncio
async def test_health_overdue_after_two_intervals(runner, clock):
    async def handler(key):
        return None

    await runner.run([], handler)
    assert runner.health_check()["healthy"] is True

    clock.advance(minutes=31)
    health = runner.health_check()

    assert health["healthy"] is False
    assert health["is_overdue"] is True
    assert "warning" in health
