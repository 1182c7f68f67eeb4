"""
Per-transaction locking.

Everything that changes a transaction (charge flow, webhook events,
refunds, disputes, settlement) runs under the lock of its transaction id,
so changes to one transaction are serialized while different transactions
proceed in parallel.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncIterator, Dict, Protocol

import structlog
from redis.asyncio import Redis

from payout_core.domain.exceptions import LockAcquisitionError

logger = structlog.get_logger(__name__)


class TransactionLock(Protocol):
    def hold(self, key: str) -> AsyncContextManager[None]: ...


class KeyedLock:
    """
    In-process lock per key.

    Locks are created on first use and dropped once nobody holds or waits
    for them. Not reentrant.
    """

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class RedisKeyedLock:
    """
    Redis-backed lock per key for multi-process deployments.

    Uses the redis-py lock (SET NX with expiry, token checked on release).
    """

    def __init__(
        self,
        redis_client: Redis,
        timeout: float = 30.0,
        blocking_timeout: float = 10.0,
        prefix: str = "lock:transaction",
    ):
        """
        Initialize lock.

        Args:
            redis_client: Redis client
            timeout: Lock expiry in seconds (guards against crashed holders)
            blocking_timeout: How long to wait for the lock
            prefix: Key prefix
        """
        self.redis = redis_client
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"{self.prefix}:{key}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            logger.error("transaction_lock_timeout", lock_key=key)
            raise LockAcquisitionError(
                f"Could not acquire lock for {key}", details={"lock_key": key}
            )
        logger.debug("transaction_lock_acquired", lock_key=key)
        try:
            yield
        finally:
            await lock.release()
