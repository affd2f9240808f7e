"""
HTTP application: webhook intake, internal sync API and health checks.
"""

import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request

from syncguard.config import settings
from syncguard.db.pool import db_pool
from syncguard.infrastructure.observability.logging import get_logger, setup_logging
from syncguard.routes import health, sync, webhooks
from syncguard.runtime import build_orchestrator, load_collaborators
from syncguard.services.infrastructure.redis_client import redis_client

# Setup logging before creating the app
setup_logging(log_level=settings.LOG_LEVEL)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown with proper resource management."""
    logger.info("Application starting", environment=settings.environment, debug=settings.debug)

    startup_tasks = []
    app.state.orchestrator = None

    try:
        logger.info("Initializing database pool")
        await db_pool.initialize()
        startup_tasks.append("database_pool")

        logger.info("Initializing Redis connection")
        await redis_client.initialize()
        startup_tasks.append("redis")

        app.state.orchestrator = build_orchestrator(load_collaborators())
        startup_tasks.append("orchestrator")

        logger.info("All services initialized successfully", services=startup_tasks)

    except Exception as e:
        logger.error("Failed to initialize services", error=str(e), completed_tasks=startup_tasks)

        # Clean up any successfully initialized services in reverse order
        if "redis" in startup_tasks:
            try:
                await redis_client.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up Redis", error=str(cleanup_error))

        if "database_pool" in startup_tasks:
            try:
                await db_pool.close()
            except Exception as cleanup_error:
                logger.error("Error cleaning up database pool", error=str(cleanup_error))

        raise

    yield

    # Shutdown sequence (reverse order)
    logger.info("Application shutting down")

    shutdown_errors = []

    # Queued webhook syncs still need Redis and the database
    try:
        logger.info("Draining sync orchestrator")
        await app.state.orchestrator.shutdown()
        for provider in app.state.orchestrator.webhooks.providers.values():
            close = getattr(provider, "close", None)
            if close is not None:
                await close()
    except Exception as e:
        logger.error("Error draining sync orchestrator", error=str(e))
        shutdown_errors.append(f"Orchestrator: {e}")

    try:
        logger.info("Closing Redis connection")
        await redis_client.close()
    except Exception as e:
        logger.error("Error closing Redis", error=str(e))
        shutdown_errors.append(f"Redis: {e}")

    # Close database pool last (may have active connections)
    try:
        logger.info("Closing database pool")
        await db_pool.close()
    except Exception as e:
        logger.error("Error closing database pool", error=str(e))
        shutdown_errors.append(f"Database: {e}")

    if shutdown_errors:
        logger.warning("Some services had shutdown errors", errors=shutdown_errors)
    else:
        logger.info("All services closed successfully")


app = FastAPI(
    title="SyncGuard",
    description="Sync reliability orchestration for contacts and calendar integrations",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(health.router)
app.include_router(webhooks.router)
app.include_router(sync.router)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    """Log HTTP requests with timing."""
    start_time = time.time()
    response = await call_next(request)
    process_time = (time.time() - start_time) * 1000

    logger.info(
        "HTTP request completed",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(process_time, 2),
    )
    return response


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
