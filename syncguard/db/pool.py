"""
PostgreSQL pool for the persisted sync state.

Breakers, token health, schedules, subscriptions and the metrics log all live
in Postgres; this module owns the psycopg_pool instance every repository call
goes through, applies the bundled schema on request, and reports whether the
sync tables are reachable for /readyz.
"""

import asyncio
import time
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

SCHEMA_PATH = Path(__file__).with_name("schema.sql")

SYNC_TABLES = (
    "circuit_breaker_state",
    "token_health",
    "sync_schedule",
    "webhook_subscriptions",
    "sync_metrics",
    "token_health_notifications",
    "webhook_notifications",
)

CLOSE_TIMEOUT_SECONDS = 30.0
UTILIZATION_WARN_PERCENT = 80
UTILIZATION_UNHEALTHY_PERCENT = 90


class SyncStatePool:
    """Owns the connection pool; opened by the app lifespan or the worker runtime."""

    def __init__(self, config: Settings | None = None):
        self.config = config or settings
        self.pool: AsyncConnectionPool | None = None

    @property
    def is_open(self) -> bool:
        return self.pool is not None

    async def initialize(self) -> None:
        if self.pool is not None:
            return

        pool_config = self.config.get_db_pool_config()
        pool = AsyncConnectionPool(
            conninfo=self.config.DATABASE_URL,
            open=False,
            check=AsyncConnectionPool.check_connection,
            configure=self._configure_connection,
            **pool_config,
        )
        try:
            await pool.open(wait=True)
        except Exception as e:
            logger.error(
                "Failed to open sync state pool", error=str(e), error_type=type(e).__name__
            )
            await pool.close()
            raise RuntimeError(f"Database pool initialization failed: {e}") from e

        self.pool = pool
        logger.info(
            "Sync state pool opened",
            min_size=pool_config["min_size"],
            max_size=pool_config["max_size"],
        )

        if self.config.DB_APPLY_SCHEMA:
            await self.apply_schema()

    async def _configure_connection(self, conn: psycopg.AsyncConnection) -> None:
        conn.row_factory = dict_row
        # Autocommit keeps idle connections out of INTRANS state
        await conn.set_autocommit(True)
        await conn.execute(
            sql.SQL("SET application_name = {}").format(
                sql.Literal(f"syncguard-{self.config.environment}")
            )
        )
        await conn.execute("SET timezone = 'UTC'")
        # Row locks on state tables are short; a long wait means a stuck writer
        await conn.execute(
            sql.SQL("SET lock_timeout = {}").format(
                sql.Literal(f"{self.config.DB_LOCK_TIMEOUT_SECONDS}s")
            )
        )
        await conn.execute(
            sql.SQL("SET statement_timeout = {}").format(
                sql.Literal(f"{self.config.DB_STATEMENT_TIMEOUT_SECONDS}s")
            )
        )

    async def apply_schema(self) -> None:
        """Create the sync state tables if they do not exist yet."""
        async with self.connection() as conn:
            await conn.execute(SCHEMA_PATH.read_text())
        logger.info("Sync state schema applied", tables=len(SYNC_TABLES))

    async def close(self) -> None:
        if self.pool is None:
            return
        pool, self.pool = self.pool, None
        try:
            await asyncio.wait_for(pool.close(), timeout=CLOSE_TIMEOUT_SECONDS)
            logger.info("Sync state pool closed")
        except TimeoutError:
            logger.warning("Sync state pool close timed out")

    @asynccontextmanager
    async def connection(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        if self.pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        async with self.pool.connection() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[psycopg.AsyncConnection, None]:
        """Connection with automatic commit/rollback."""
        async with self.connection() as conn:
            async with conn.transaction():
                yield conn

    async def missing_tables(self) -> list[str]:
        async with self.connection() as conn:
            cursor = await conn.execute(
                "SELECT name FROM unnest(%s::text[]) AS name WHERE to_regclass(name) IS NULL",
                (list(SYNC_TABLES),),
            )
            rows = await cursor.fetchall()
        return [row["name"] for row in rows]

    def pool_stats(self) -> dict[str, Any]:
        stats = self.pool.get_stats()
        size = stats.get("pool_size", 0)
        available = stats.get("pool_available", 0)
        return {
            "pool_size": size,
            "pool_available": available,
            "pool_utilization_percent": round((size - available) / size * 100, 2) if size else 0,
            "requests_waiting": stats.get("requests_waiting", 0),
        }

    async def health_check(self) -> dict[str, Any]:
        """
        Reachability of the sync state tables plus pool pressure.

        Returns:
            dict: healthy flag, query latency, pool stats and any warnings
        """
        if self.pool is None:
            return {"healthy": False, "service": "sync_state_db", "error": "Pool not initialized"}

        started = time.monotonic()
        try:
            missing = await self.missing_tables()
        except Exception as e:
            logger.error("Sync state health check failed", error=str(e), error_type=type(e).__name__)
            return {
                "healthy": False,
                "service": "sync_state_db",
                "error": str(e),
                "error_type": type(e).__name__,
            }

        stats = self.pool_stats()
        utilization = stats["pool_utilization_percent"]
        report: dict[str, Any] = {
            "healthy": not missing and utilization < UTILIZATION_UNHEALTHY_PERCENT,
            "service": "sync_state_db",
            "query_time_ms": round((time.monotonic() - started) * 1000, 2),
            "pool_stats": stats,
        }

        warnings = []
        if missing:
            report["error"] = f"Missing tables: {', '.join(missing)}"
        if utilization > UTILIZATION_WARN_PERCENT:
            warnings.append(f"High pool utilization: {utilization:.1f}%")
        if warnings:
            report["warnings"] = warnings
        return report


db_pool = SyncStatePool()


async def db_health_check() -> dict[str, Any]:
    return await db_pool.health_check()
