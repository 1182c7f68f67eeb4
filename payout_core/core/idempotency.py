"""
Processed-event registry for inbound event deduplication.

Remembers each processed event key together with a fingerprint of its
payload. A replay with the same payload is a duplicate and is dropped
after being counted; a replay with a different payload is a conflict and
must be surfaced for review.
"""
import time
from abc import ABC, abstractmethod
from collections import OrderedDict
from enum import Enum
from typing import Callable, Dict, Optional, Tuple

import structlog
from redis.asyncio import Redis

logger = structlog.get_logger(__name__)


class DedupOutcome(str, Enum):
    NEW = "new"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"


class EventRegistry(ABC):
    """Storage for processed event keys."""

    @abstractmethod
    async def lookup(self, key: str) -> Optional[str]:
        """Fingerprint stored for a processed key, or None."""

    @abstractmethod
    async def remember(self, key: str, fingerprint: str) -> None: ...

    @abstractmethod
    async def record_duplicate(self, key: str) -> int:
        """Count a replay. Returns the number of replays seen so far."""

    @abstractmethod
    async def duplicate_count(self, key: str) -> int: ...

    async def check(self, key: str, fingerprint: str) -> DedupOutcome:
        """
        Classify an incoming event key.

        Args:
            key: Event deduplication key
            fingerprint: Payload fingerprint of the incoming event

        Returns:
            DedupOutcome: NEW, DUPLICATE (same payload) or CONFLICT
        """
        stored = await self.lookup(key)
        if stored is None:
            return DedupOutcome.NEW

        replays = await self.record_duplicate(key)
        if stored == fingerprint:
            logger.info("duplicate_event_dropped", event_key=key, replays=replays)
            return DedupOutcome.DUPLICATE

        logger.error("conflicting_duplicate_event", event_key=key, replays=replays)
        return DedupOutcome.CONFLICT


class InMemoryEventRegistry(EventRegistry):
    """
    Process-local registry.

    Entries expire ``ttl`` seconds after they are remembered, like the Redis
    keys, and expired entries are evicted on every access. Replay counters
    live as long as the key they count.
    """

    def __init__(self, ttl: int = 7 * 86400, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.clock = clock
        # Insertion order is expiry order since the ttl is fixed
        self._processed: "OrderedDict[str, Tuple[str, float]]" = OrderedDict()
        self._duplicates: Dict[str, int] = {}

    def __len__(self) -> int:
        self._evict_expired()
        return len(self._processed)

    async def lookup(self, key: str) -> Optional[str]:
        self._evict_expired()
        entry = self._processed.get(key)
        return entry[0] if entry else None

    async def remember(self, key: str, fingerprint: str) -> None:
        self._evict_expired()
        self._processed.pop(key, None)
        self._processed[key] = (fingerprint, self.clock() + self.ttl)

    async def record_duplicate(self, key: str) -> int:
        self._duplicates[key] = self._duplicates.get(key, 0) + 1
        return self._duplicates[key]

    async def duplicate_count(self, key: str) -> int:
        self._evict_expired()
        return self._duplicates.get(key, 0)

    def _evict_expired(self) -> None:
        now = self.clock()
        while self._processed:
            key, (_, expires_at) = next(iter(self._processed.items()))
            if expires_at > now:
                break
            del self._processed[key]
            self._duplicates.pop(key, None)


class RedisEventRegistry(EventRegistry):
    """
    Redis-backed registry.

    Keys expire after ``ttl`` seconds, which bounds how late a replay can
    still be recognized.
    """

    def __init__(self, redis_client: Redis, ttl: int = 7 * 86400, prefix: str = "event"):
        self.redis = redis_client
        self.ttl = ttl
        self.prefix = prefix

    async def lookup(self, key: str) -> Optional[str]:
        value = await self.redis.get(f"{self.prefix}:processed:{key}")
        if isinstance(value, bytes):
            return value.decode()
        return value

    async def remember(self, key: str, fingerprint: str) -> None:
        await self.redis.setex(f"{self.prefix}:processed:{key}", self.ttl, fingerprint)

    async def record_duplicate(self, key: str) -> int:
        counter = f"{self.prefix}:duplicates:{key}"
        count = await self.redis.incr(counter)
        await self.redis.expire(counter, self.ttl)
        return int(count)

    async def duplicate_count(self, key: str) -> int:
        value = await self.redis.get(f"{self.prefix}:duplicates:{key}")
        return int(value or 0)
