"""
Bounded fan-out for the periodic sweeps.

Each sweep turns into one task per (user, integration) key, processed in
batches under a semaphore with a per-task timeout, so a sweep never floods
the provider or the database and one hung key cannot stall the rest.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Any

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.models.domain.sync_domain import SyncKey
from syncguard.utils.clock import utc_now

logger = get_logger(__name__)

KeyHandler = Callable[[SyncKey], Awaitable[Any]]


class SweepJobError(Exception):
    """Raised when a sweep cannot run at all (e.g. the key listing failed)."""

    def __init__(self, message: str, operation: str | None = None, recoverable: bool = True):
        super().__init__(message)
        self.operation = operation
        self.recoverable = recoverable


class SweepMetrics:
    """Per-run counters for one sweep."""

    def __init__(self, job_name: str, clock: Callable[[], datetime] = utc_now):
        self.job_name = job_name
        self.clock = clock
        self.reset()

    def reset(self):
        """Reset all metrics for new job run."""
        self.start_time = self.clock()
        self.keys_processed = 0
        self.succeeded = 0
        self.failed = 0
        self.timed_out = 0
        self.total_duration_seconds = 0.0
        self.errors: list[dict] = []

    def record_success(self, key: SyncKey, duration_ms: float):
        self.keys_processed += 1
        self.succeeded += 1
        logger.debug(
            "Sweep task completed", job_run=self.job_name, duration_ms=duration_ms, **key.log_fields()
        )

    def record_failure(self, key: SyncKey, error: str, timed_out: bool = False):
        self.keys_processed += 1
        self.failed += 1
        if timed_out:
            self.timed_out += 1

        self.errors.append(
            {
                "key": str(key),
                "error": error,
                "timed_out": timed_out,
                "timestamp": self.clock().isoformat(),
            }
        )
        logger.warning("Sweep task failed", job_run=self.job_name, error=error, **key.log_fields())

    def finalize(self):
        self.total_duration_seconds = (self.clock() - self.start_time).total_seconds()

    def to_dict(self) -> dict:
        return {
            "job_run": self.job_name,
            "start_time": self.start_time.isoformat(),
            "total_duration_seconds": round(self.total_duration_seconds, 2),
            "keys_processed": self.keys_processed,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "timed_out": self.timed_out,
            "success_rate_percent": round(
                (self.succeeded / self.keys_processed * 100) if self.keys_processed else 0, 2
            ),
            "errors_count": len(self.errors),
        }


class SweepRunner:
    """Runs a handler over many keys with bounded parallelism."""

    def __init__(
        self,
        name: str,
        interval: timedelta,
        config: Settings | None = None,
        clock: Callable[[], datetime] = utc_now,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.name = name
        self.interval = interval
        self.config = config or settings
        self.clock = clock
        self.sleep = sleep
        self.is_running = False
        self.last_run_time: datetime | None = None
        self.metrics = SweepMetrics(name, clock)

    @property
    def batch_size(self) -> int:
        return max(1, self.config.SWEEP_BATCH_SIZE)

    @property
    def max_concurrency(self) -> int:
        return max(1, self.config.SWEEP_MAX_CONCURRENCY)

    async def run(self, keys: list[SyncKey], handler: KeyHandler) -> dict:
        """
        Run one sweep over the given keys.

        Returns:
            Dict: run metrics, or {"skipped": True} if the previous run is still going
        """
        if self.is_running:
            logger.warning("Sweep already running, skipping this iteration", job=self.name)
            return {"job_run": self.name, "skipped": True, "reason": "already_running"}

        try:
            self.is_running = True
            self.metrics.reset()

            if keys:
                logger.info("Starting sweep", job=self.name, key_count=len(keys))
                await self._process_in_batches(keys, handler)

            self.metrics.finalize()
            self.last_run_time = self.clock()
            result = self.metrics.to_dict()
            logger.info("Sweep completed", **result)
            return result

        finally:
            self.is_running = False

    async def _process_in_batches(self, keys: list[SyncKey], handler: KeyHandler) -> None:
        batches = [keys[i : i + self.batch_size] for i in range(0, len(keys), self.batch_size)]
        semaphore = asyncio.Semaphore(self.max_concurrency)

        for batch_num, batch in enumerate(batches, 1):
            logger.debug(
                "Processing sweep batch",
                job=self.name,
                batch_number=batch_num,
                batch_size=len(batch),
                total_batches=len(batches),
            )
            await asyncio.gather(
                *(self._run_with_semaphore(semaphore, key, handler) for key in batch),
                return_exceptions=True,
            )

            if batch_num < len(batches) and self.config.SWEEP_BATCH_PAUSE_SECONDS > 0:
                await self.sleep(self.config.SWEEP_BATCH_PAUSE_SECONDS)

    async def _run_with_semaphore(
        self, semaphore: asyncio.Semaphore, key: SyncKey, handler: KeyHandler
    ) -> None:
        async with semaphore:
            start_time = time.monotonic()
            try:
                await asyncio.wait_for(handler(key), timeout=self.config.SWEEP_TASK_TIMEOUT_SECONDS)
            except TimeoutError:
                self.metrics.record_failure(
                    key,
                    f"Timed out after {self.config.SWEEP_TASK_TIMEOUT_SECONDS}s",
                    timed_out=True,
                )
            except Exception as e:
                self.metrics.record_failure(key, f"{type(e).__name__}: {e}")
            else:
                self.metrics.record_success(key, (time.monotonic() - start_time) * 1000)

    def get_job_status(self) -> dict:
        return {
            "job_name": self.name,
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "interval_minutes": self.interval.total_seconds() / 60,
            "batch_size": self.batch_size,
            "max_concurrent": self.max_concurrency,
            "last_run_metrics": self.metrics.to_dict() if self.last_run_time else None,
        }

    def health_check(self) -> dict:
        """Unhealthy once the sweep has not completed for twice its interval."""
        now = self.clock()
        is_overdue = self.last_run_time is not None and (now - self.last_run_time) > self.interval * 2

        health_status = {
            "healthy": not is_overdue,
            "service": f"{self.name}_sweep",
            "is_running": self.is_running,
            "last_run_time": self.last_run_time.isoformat() if self.last_run_time else None,
            "is_overdue": is_overdue,
        }
        if is_overdue:
            health_status["warning"] = (
                f"Sweep overdue by {(now - self.last_run_time).total_seconds() / 60:.1f} minutes"
            )
        return health_status
