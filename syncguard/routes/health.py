"""
Health check endpoints: liveness, dependency readiness and operator sync metrics.
"""

import time

from fastapi import APIRouter, Depends

from syncguard.config import settings
from syncguard.db.pool import db_health_check
from syncguard.infrastructure.observability.logging import log_health_check
from syncguard.routes.dependencies import get_sync_orchestrator
from syncguard.services.infrastructure.redis_client import redis_client
from syncguard.services.sync_health_service import SyncHealthService
from syncguard.services.sync_orchestrator import SyncOrchestrator

router = APIRouter()


@router.get("/healthz")
async def healthz():
    """Basic health check - always returns 200 if app is running."""
    return {"status": "ok", "service": "syncguard"}


@router.get("/readyz")
async def readyz():
    """Readiness check for Redis and the database pool."""
    checks = {}
    overall_ok = True

    if settings.LOCK_BACKEND == "redis":
        t0 = time.time()
        try:
            redis_ok = await redis_client.ping()
            latency_ms = round((time.time() - t0) * 1000, 1)
            checks["redis"] = {"ok": bool(redis_ok), "latency_ms": latency_ms}
            overall_ok = overall_ok and bool(redis_ok)
        except Exception as e:
            latency_ms = round((time.time() - t0) * 1000, 1)
            checks["redis"] = {"ok": False, "error": f"{type(e).__name__}: {e}"}
            overall_ok = False
        log_health_check("redis", checks["redis"]["ok"], latency_ms, checks["redis"].get("error"))

    t0 = time.time()
    try:
        db_health = await db_health_check()
        is_healthy = db_health.get("healthy", False)
        checks["database"] = {
            "ok": is_healthy,
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        if "pool_stats" in db_health:
            checks["database"].update(db_health["pool_stats"])
        if "warnings" in db_health:
            checks["database"]["warnings"] = db_health["warnings"]
        if not is_healthy:
            checks["database"]["error"] = db_health.get("error", "Database unhealthy")
        overall_ok = overall_ok and is_healthy
    except Exception as e:
        checks["database"] = {
            "ok": False,
            "error": f"{type(e).__name__}: {e}",
            "latency_ms": round((time.time() - t0) * 1000, 1),
        }
        overall_ok = False
    log_health_check(
        "database",
        checks["database"]["ok"],
        checks["database"]["latency_ms"],
        checks["database"].get("error"),
    )

    return {"overall_ok": overall_ok, "checks": checks, "timestamp": time.time()}


@router.get("/health/sync")
async def sync_health(orchestrator: SyncOrchestrator = Depends(get_sync_orchestrator)):
    """Breaker, token, webhook and success-rate metrics across all keys."""
    service = SyncHealthService(
        orchestrator.metrics,
        orchestrator.webhooks,
        repository=orchestrator.repository,
        config=orchestrator.config,
        clock=orchestrator.clock,
    )
    report = await service.get_sync_health()
    report["sweeps"] = {name: runner.health_check() for name, runner in orchestrator.sweeps.items()}
    return report
