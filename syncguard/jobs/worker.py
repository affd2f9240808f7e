"""
Generic background worker runner.

Reads the desired job name from CLI args or the WORKER_JOB environment
variable and runs that trigger's loop against the sync orchestrator:

    python -m syncguard.jobs.worker adaptive_sync
"""

import asyncio
import os
import signal
import sys
from collections.abc import Awaitable, Callable

from syncguard.config import settings
from syncguard.infrastructure.observability.logging import get_logger, setup_logging
from syncguard.runtime import get_orchestrator, shutdown_runtime
from syncguard.services.sync_orchestrator import (
    TRIGGER_ADAPTIVE_SYNC,
    TRIGGER_TOKEN_REFRESH,
    TRIGGER_WEBHOOK_HEALTH,
    TRIGGER_WEBHOOK_RENEWAL,
)

logger = get_logger(__name__)

JobCoroutine = Callable[[], Awaitable[None]]

ERROR_RETRY_SECONDS = 60


async def start_trigger_scheduler(trigger_name: str, interval_seconds: float) -> None:
    """Fire one trigger on a fixed interval until cancelled."""
    orchestrator = await get_orchestrator()
    logger.info(
        "Starting sync trigger scheduler",
        trigger=trigger_name,
        interval_minutes=round(interval_seconds / 60, 2),
    )

    while True:
        try:
            metrics = await orchestrator.on_tick(trigger_name)

            if not metrics.get("skipped", False):
                logger.info(
                    "Sync trigger cycle completed",
                    **{k: v for k, v in metrics.items() if k != "errors"},
                )

            await asyncio.sleep(interval_seconds)

        except asyncio.CancelledError:
            logger.info("Sync trigger scheduler stopped", trigger=trigger_name)
            raise
        except Exception as e:
            logger.error(
                "Error in sync trigger scheduler",
                trigger=trigger_name,
                error=str(e),
                error_type=type(e).__name__,
            )
            # Avoid a tight loop while the store or Redis is down
            await asyncio.sleep(ERROR_RETRY_SECONDS)


async def start_adaptive_sync_scheduler() -> None:
    await start_trigger_scheduler(
        TRIGGER_ADAPTIVE_SYNC, settings.ADAPTIVE_SYNC_INTERVAL_MINUTES * 60
    )


async def start_token_refresh_scheduler() -> None:
    await start_trigger_scheduler(
        TRIGGER_TOKEN_REFRESH, settings.TOKEN_REFRESH_INTERVAL_HOURS * 3600
    )


async def start_webhook_renewal_scheduler() -> None:
    await start_trigger_scheduler(
        TRIGGER_WEBHOOK_RENEWAL, settings.WEBHOOK_RENEWAL_INTERVAL_HOURS * 3600
    )


async def start_webhook_health_scheduler() -> None:
    await start_trigger_scheduler(
        TRIGGER_WEBHOOK_HEALTH, settings.WEBHOOK_HEALTH_INTERVAL_HOURS * 3600
    )


JOB_REGISTRY: dict[str, JobCoroutine] = {
    TRIGGER_ADAPTIVE_SYNC: start_adaptive_sync_scheduler,
    TRIGGER_TOKEN_REFRESH: start_token_refresh_scheduler,
    TRIGGER_WEBHOOK_RENEWAL: start_webhook_renewal_scheduler,
    TRIGGER_WEBHOOK_HEALTH: start_webhook_health_scheduler,
}


def _resolve_job_name() -> str:
    """Pick the target job from CLI args or WORKER_JOB env variable."""
    if len(sys.argv) > 1:
        return sys.argv[1].strip().lower()
    return os.getenv("WORKER_JOB", TRIGGER_ADAPTIVE_SYNC).strip().lower()


async def run_worker(job_name: str | None = None) -> None:
    """Run the requested background job until SIGTERM/SIGINT, then drain."""
    name = (job_name or _resolve_job_name()).strip().lower()
    if name not in JOB_REGISTRY:
        raise ValueError(
            f"Unknown worker job '{name}'. "
            f"Available jobs: {', '.join(sorted(JOB_REGISTRY.keys()))}"
        )

    logger.info("Starting background worker", job=name)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = []
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
            installed.append(sig)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    job = asyncio.create_task(JOB_REGISTRY[name]())
    stopper = asyncio.create_task(stop.wait())
    try:
        await asyncio.wait({job, stopper}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stopper.cancel()
        for sig in installed:
            loop.remove_signal_handler(sig)
        if not job.done():
            logger.info("Stopping background worker", job=name)
        # Drains in-flight sweeps within the grace period before closing resources
        await shutdown_runtime()
        job.cancel()
        await asyncio.gather(job, return_exceptions=True)

    if not job.cancelled() and job.exception() is not None:
        raise job.exception()


def main() -> None:
    """CLI entrypoint."""
    setup_logging(log_level=settings.LOG_LEVEL)
    job_name = _resolve_job_name()
    asyncio.run(run_worker(job_name))


if __name__ == "__main__":
    main()
