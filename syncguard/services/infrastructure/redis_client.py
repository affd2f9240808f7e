"""
Pooled asyncio Redis client.
Backs the distributed per-key locks and the manual-sync rate limit counters.
"""

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.asyncio.lock import Lock

from syncguard.config import settings
from syncguard.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

MAX_CONNECTIONS = 20


class RedisClient:
    """Connection-pooled Redis wrapper initialized once per process."""

    def __init__(self, url: str | None = None):
        self.url = url or settings.REDIS_URL
        self.pool: ConnectionPool | None = None
        self.client: redis.Redis | None = None
        self._initialized = False

    async def initialize(self) -> None:
        """Initialize connection pool on startup"""
        if self._initialized:
            return

        try:
            self.pool = ConnectionPool.from_url(
                self.url,
                max_connections=MAX_CONNECTIONS,
                retry_on_timeout=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                health_check_interval=30,
                decode_responses=True,
            )
            self.client = redis.Redis(connection_pool=self.pool)

            await self.client.ping()
            self._initialized = True
            logger.info("Redis client initialized", max_connections=MAX_CONNECTIONS)

        except Exception as e:
            logger.error("Failed to initialize Redis client", error=str(e))
            self._initialized = False
            raise RuntimeError("Redis initialization failed") from e

    async def close(self) -> None:
        """Clean shutdown"""
        try:
            if self.client:
                await self.client.aclose()
            if self.pool:
                await self.pool.disconnect()
            self._initialized = False
            logger.info("Redis client closed")
        except Exception as e:
            logger.error("Error closing Redis client", error=str(e))

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            logger.warning("Redis not initialized, attempting to initialize")
            await self.initialize()

    async def ping(self) -> bool:
        """Test Redis connection"""
        try:
            await self._ensure_initialized()
            return bool(await self.client.ping())
        except Exception as e:
            logger.error("Redis ping failed", error=str(e))
            return False

    async def acquire_slot(self, key: str, ttl_s: int) -> bool:
        """
        Claim a rate-limit slot: SET NX with expiry.

        Returns:
            True if the slot was free, False while a previous claim is still alive
        """
        await self._ensure_initialized()
        result = await self.client.set(key, "1", nx=True, ex=ttl_s)
        return bool(result)

    def lock(self, name: str, timeout: float, blocking_timeout: float | None) -> Lock:
        """Redis lease lock; the lease expires after `timeout` seconds even if never released."""
        if not self._initialized:
            raise ConnectionError("Redis client not available")
        return self.client.lock(
            name, timeout=timeout, blocking_timeout=blocking_timeout, thread_local=False
        )


# Global instance
redis_client = RedisClient()
