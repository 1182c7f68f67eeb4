"""
Tests for per-key locking and the processed-event registry.
"""
import asyncio
from typing import List
from unittest.mock import AsyncMock, MagicMock

import pytest

from payout_core.core.idempotency import DedupOutcome, InMemoryEventRegistry, RedisEventRegistry
from payout_core.core.locks import KeyedLock, RedisKeyedLock
from payout_core.domain.exceptions import LockAcquisitionError


class TestKeyedLock:
    """Test suite for the in-process keyed lock."""

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_same_key_is_serialized(self) -> None:
        """
        Test that holders of one key never overlap.

        Each holder reads, yields and writes a shared counter; without
        mutual exclusion updates would be lost.
        """
        locks = KeyedLock()
        counter = {"value": 0}

        async def increment() -> None:
            async with locks.hold("txn_1"):
                current = counter["value"]
                await asyncio.sleep(0)
                counter["value"] = current + 1

        await asyncio.gather(*(increment() for _ in range(50)))

        assert counter["value"] == 50

    @pytest.mark.race
    @pytest.mark.asyncio
    async def test_different_keys_run_in_parallel(self) -> None:
        """Test that unrelated keys do not wait for each other."""
        locks = KeyedLock()
        inside: List[str] = []
        release = asyncio.Event()

        async def hold(key: str) -> None:
            async with locks.hold(key):
                inside.append(key)
                await release.wait()

        tasks = [asyncio.create_task(hold(k)) for k in ("txn_1", "txn_2")]
        await asyncio.sleep(0.01)
        assert sorted(inside) == ["txn_1", "txn_2"]

        release.set()
        await asyncio.gather(*tasks)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_idle_locks_are_dropped(self) -> None:
        """Test that locks do not accumulate per key."""
        locks = KeyedLock()

        async with locks.hold("txn_1"):
            assert len(locks) == 1

        assert len(locks) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_lock_released_on_error(self) -> None:
        """Test that an exception inside the block releases the key."""
        locks = KeyedLock()

        with pytest.raises(RuntimeError):
            async with locks.hold("txn_1"):
                raise RuntimeError("boom")

        async with locks.hold("txn_1"):
            pass


class TestRedisKeyedLock:
    """Test suite for the Redis keyed lock."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_acquire_and_release(self) -> None:
        """Test that the redis-py lock is acquired and released."""
        redis_lock = MagicMock()
        redis_lock.acquire = AsyncMock(return_value=True)
        redis_lock.release = AsyncMock()
        redis_client = MagicMock()
        redis_client.lock.return_value = redis_lock

        async with RedisKeyedLock(redis_client, timeout=5).hold("txn_1"):
            pass

        redis_client.lock.assert_called_once_with(
            "lock:transaction:txn_1", timeout=5, blocking_timeout=10.0
        )
        redis_lock.release.assert_awaited_once()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_acquire_timeout_raises(self) -> None:
        """Test that a busy key raises instead of proceeding unlocked."""
        redis_lock = MagicMock()
        redis_lock.acquire = AsyncMock(return_value=False)
        redis_client = MagicMock()
        redis_client.lock.return_value = redis_lock

        with pytest.raises(LockAcquisitionError):
            async with RedisKeyedLock(redis_client).hold("txn_1"):
                pass


class TestEventRegistry:
    """Test suite for processed-event deduplication."""

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_new_duplicate_and_conflict(self) -> None:
        """Test the three outcomes and the replay counter."""
        registry = InMemoryEventRegistry()

        assert await registry.check("stripe:evt_1", "fp_a") == DedupOutcome.NEW
        await registry.remember("stripe:evt_1", "fp_a")

        assert await registry.check("stripe:evt_1", "fp_a") == DedupOutcome.DUPLICATE
        assert await registry.check("stripe:evt_1", "fp_b") == DedupOutcome.CONFLICT
        assert await registry.duplicate_count("stripe:evt_1") == 2

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_in_memory_entries_expire(self) -> None:
        """Test that remembered keys and their replay counters are evicted after the ttl."""
        now = [1000.0]
        registry = InMemoryEventRegistry(ttl=60, clock=lambda: now[0])

        await registry.remember("stripe:evt_1", "fp_a")
        now[0] += 30
        await registry.remember("stripe:evt_2", "fp_b")
        assert await registry.check("stripe:evt_1", "fp_a") == DedupOutcome.DUPLICATE

        now[0] += 31
        assert await registry.lookup("stripe:evt_1") is None
        assert await registry.duplicate_count("stripe:evt_1") == 0
        assert await registry.lookup("stripe:evt_2") == "fp_b"
        assert len(registry) == 1

        now[0] += 30
        assert await registry.check("stripe:evt_2", "fp_b") == DedupOutcome.NEW
        assert len(registry) == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_redis_registry_keys_and_ttl(self) -> None:
        """Test Redis key layout and expiry."""
        redis_client = MagicMock()
        redis_client.get = AsyncMock(return_value=b"fp_a")
        redis_client.setex = AsyncMock()
        redis_client.incr = AsyncMock(return_value=1)
        redis_client.expire = AsyncMock()
        registry = RedisEventRegistry(redis_client, ttl=60)

        await registry.remember("stripe:evt_1", "fp_a")
        outcome = await registry.check("stripe:evt_1", "fp_a")

        redis_client.setex.assert_awaited_once_with("event:processed:stripe:evt_1", 60, "fp_a")
        redis_client.incr.assert_awaited_once_with("event:duplicates:stripe:evt_1")
        redis_client.expire.assert_awaited_once_with("event:duplicates:stripe:evt_1", 60)
        assert outcome == DedupOutcome.DUPLICATE
