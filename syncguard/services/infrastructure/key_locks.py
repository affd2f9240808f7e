"""
Per-key mutual exclusion.

Every read-modify-write of persisted per-key state and every sync attempt runs
under a named lock. The Redis backend serializes across worker processes and
gives each lock a lease so a hung holder cannot keep a key forever; the local
backend covers single-process deployments and tests.
"""

import asyncio
import weakref
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from redis.exceptions import LockError

from syncguard.config import Settings, settings
from syncguard.infrastructure.observability.logging import get_logger
from syncguard.services.infrastructure.redis_client import RedisClient, redis_client

logger = get_logger(__name__)


class LockNotAcquiredError(Exception):
    """Raised when a key is held elsewhere (non-blocking) or the wait timed out."""

    def __init__(self, name: str, operation: str = "acquire", recoverable: bool = True):
        super().__init__(f"Lock '{name}' is held by another worker")
        self.name = name
        self.operation = operation
        self.recoverable = recoverable


class KeyLockManager:
    """Named async locks. Subclasses provide the backend."""

    def __init__(self, acquire_timeout: float | None = None):
        self.acquire_timeout = (
            acquire_timeout if acquire_timeout is not None else settings.LOCK_ACQUIRE_TIMEOUT_SECONDS
        )

    def hold(self, name: str, *, blocking: bool = True, timeout: float | None = None):
        raise NotImplementedError

    async def is_locked(self, name: str) -> bool:
        raise NotImplementedError


class LocalKeyLockManager(KeyLockManager):
    """asyncio.Lock per name, dropped once nobody references it."""

    def __init__(self, acquire_timeout: float | None = None):
        super().__init__(acquire_timeout)
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[name] = lock
        return lock

    @asynccontextmanager
    async def hold(
        self, name: str, *, blocking: bool = True, timeout: float | None = None
    ) -> AsyncGenerator[None, None]:
        lock = self._lock_for(name)

        if not blocking:
            if lock.locked():
                raise LockNotAcquiredError(name)
            await lock.acquire()
        else:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=timeout or self.acquire_timeout)
            except TimeoutError as e:
                raise LockNotAcquiredError(name, operation="wait") from e

        try:
            yield
        finally:
            lock.release()

    async def is_locked(self, name: str) -> bool:
        lock = self._locks.get(name)
        return lock is not None and lock.locked()


class RedisKeyLockManager(KeyLockManager):
    """Redis lease locks shared by every worker process."""

    def __init__(
        self,
        client: RedisClient | None = None,
        lease_seconds: float | None = None,
        acquire_timeout: float | None = None,
    ):
        super().__init__(acquire_timeout)
        self._redis = client or redis_client
        self.lease_seconds = lease_seconds or settings.get_lock_lease_seconds()

    @asynccontextmanager
    async def hold(
        self, name: str, *, blocking: bool = True, timeout: float | None = None
    ) -> AsyncGenerator[None, None]:
        lock = self._redis.lock(
            name,
            timeout=self.lease_seconds,
            blocking_timeout=(timeout or self.acquire_timeout) if blocking else None,
        )
        acquired = await lock.acquire(blocking=blocking)
        if not acquired:
            raise LockNotAcquiredError(name, operation="wait" if blocking else "acquire")

        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Lease ran out while we held it; another worker may own the key now
                logger.warning("Lock lease expired before release", lock=name, error=str(e))

    async def is_locked(self, name: str) -> bool:
        return bool(await self._redis.client.exists(name))


def create_lock_manager(backend: str | None = None, config: Settings | None = None) -> KeyLockManager:
    """Build the lock manager selected by LOCK_BACKEND."""
    config = config or settings
    backend = (backend or config.LOCK_BACKEND).strip().lower()
    if backend == "redis":
        return RedisKeyLockManager(
            lease_seconds=config.get_lock_lease_seconds(),
            acquire_timeout=config.LOCK_ACQUIRE_TIMEOUT_SECONDS,
        )
    if backend == "local":
        return LocalKeyLockManager(acquire_timeout=config.LOCK_ACQUIRE_TIMEOUT_SECONDS)
    raise ValueError(f"Unknown lock backend '{backend}'. Available backends: local, redis")
