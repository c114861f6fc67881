"""Bounded worker pool, batch runner and TTL cache."""

import asyncio

import pytest

from src.shadow_it_sync.sync.cache import TTLCache
from src.shadow_it_sync.sync.pool import BoundedWorkerPool, chunked, run_in_batches
from src.utils.error_handling import PersistenceError


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_cache_entries_expire():
    clock = FakeClock()
    cache = TTLCache(10, clock=clock)
    cache.set("group-1", {"a", "b"})
    assert cache.get("group-1") == {"a", "b"}

    clock.now = 10.0
    assert cache.get("group-1") is None
    assert len(cache) == 0
    assert cache.hits == 1
    assert cache.misses == 1


def test_cache_purge_expired():
    clock = FakeClock()
    cache = TTLCache(5, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2, ttl_seconds=50)
    clock.now = 6
    assert cache.purge_expired() == 1
    assert "b" in cache


def test_cache_rejects_non_positive_ttl():
    with pytest.raises(ValueError):
        TTLCache(0)


async def test_get_or_load_calls_loader_once():
    cache = TTLCache(60)
    calls = []

    async def load():
        calls.append(1)
        return ["member"]

    assert await cache.get_or_load("g", load) == ["member"]
    assert await cache.get_or_load("g", load) == ["member"]
    assert len(calls) == 1


async def test_pool_respects_concurrency_limit_and_order():
    pool = BoundedWorkerPool(concurrency_limit=2, name="test")

    async def work(item):
        await asyncio.sleep(0.01)
        return item * 10

    results = await pool.map(work, [1, 2, 3, 4, 5])
    assert results == [10, 20, 30, 40, 50]
    assert pool.max_in_flight == 2
    assert pool.in_flight == 0


async def test_pool_with_limit_one_is_sequential():
    pool = BoundedWorkerPool(concurrency_limit=1, call_delay=0.001)
    seen = []

    async def work(item):
        seen.append(item)
        return item

    await pool.map(work, ["a", "b", "c"])
    assert seen == ["a", "b", "c"]
    assert pool.max_in_flight == 1


async def test_pool_propagates_first_error():
    pool = BoundedWorkerPool(concurrency_limit=3)

    async def work(item):
        if item == 2:
            raise RuntimeError("boom")
        return item

    with pytest.raises(RuntimeError):
        await pool.map(work, [1, 2, 3])


def test_pool_rejects_bad_limits():
    with pytest.raises(ValueError):
        BoundedWorkerPool(concurrency_limit=0)
    with pytest.raises(ValueError):
        BoundedWorkerPool(call_delay=-1)


def test_chunked():
    assert chunked([1, 2, 3, 4, 5], 2) == [[1, 2], [3, 4], [5]]


async def test_failing_batch_is_abandoned_and_rest_continue():
    processed = []

    async def processor(batch):
        if 3 in batch:
            raise PersistenceError("write failed", operation="test")
        processed.extend(batch)

    report = await run_in_batches(list(range(1, 8)), processor, batch_size=2, operation="test")
    assert processed == [1, 2, 5, 6, 7]
    assert report.processed == 5
    assert report.failed == 2
    assert not report.ok
    assert report.errors[0].context["batch_index"] == 2


async def test_other_errors_propagate_from_batches():
    async def processor(batch):
        raise KeyError("unexpected")

    with pytest.raises(KeyError):
        await run_in_batches([1], processor, batch_size=1)
