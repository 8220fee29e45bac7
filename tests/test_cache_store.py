"""Unit tests for the in-memory TTLCacheStore."""

import asyncio
import threading

import pytest

from music_catalog.utils.cache_store import TTLCacheStore


def test_put_and_get_updates_hit_miss_counters() -> None:
    store = TTLCacheStore(ttl_seconds=10)

    assert store.get("missing") is None

    store.put("key", {"v": 1})

    assert store.get("key") == {"v": 1}

    stats = store.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1
    assert stats["entries"] == 1


def test_expired_entry_is_evicted_on_read(clock) -> None:
    store = TTLCacheStore(ttl_seconds=5, clock=clock)
    store.put("key", "value")

    clock.advance(4.9)
    assert store.get("key") == "value"

    clock.advance(0.1)
    assert store.get("key") is None
    assert store.stats()["evictions"] == 1
    assert len(store) == 0


def test_ttl_override_and_callable_ttl(clock) -> None:
    store = TTLCacheStore(ttl_seconds=100, clock=clock)
    store.put("short", "a", ttl_seconds=1)
    store.put("computed", 30, ttl_seconds=lambda value: value)

    clock.advance(2)
    assert store.get("short") is None
    assert store.get("computed") == 30

    clock.advance(30)
    assert store.get("computed") is None


def test_lru_eviction_removes_least_recently_used() -> None:
    store = TTLCacheStore(ttl_seconds=100, max_entries=2)
    store.put("a", 1)
    store.put("b", 2)

    # Access "a" so that "b" becomes least recently used
    assert store.get("a") == 1

    store.put("c", 3)

    assert store.get("a") == 1
    assert store.get("c") == 3
    assert store.get("b") is None


def test_capacity_evicts_expired_entries_before_live_ones(clock) -> None:
    store = TTLCacheStore(ttl_seconds=100, max_entries=2, clock=clock)
    store.put("old", 1, ttl_seconds=1)
    store.put("live", 2)

    clock.advance(5)
    store.put("new", 3)

    assert store.get("live") == 2
    assert store.get("new") == 3
    assert len(store) == 2


def test_cannot_store_none() -> None:
    store = TTLCacheStore()

    with pytest.raises(ValueError):
        store.put("k", None)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"ttl_seconds": 0},
        {"max_entries": 0},
        {"lock_stripes": 0},
    ],
)
def test_invalid_constructor_args(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        TTLCacheStore(**kwargs)


def test_update_reads_current_value_and_writes_result(clock) -> None:
    store = TTLCacheStore(ttl_seconds=10, clock=clock)

    assert store.update("counter", lambda current: (current or 0) + 1) == 1
    assert store.update("counter", lambda current: (current or 0) + 1) == 2

    clock.advance(10)
    # Expired values are passed to the function as missing
    assert store.update("counter", lambda current: (current or 0) + 1) == 1


def test_update_is_atomic_under_concurrent_threads() -> None:
    store = TTLCacheStore(ttl_seconds=60, max_entries=None)
    workers = 20
    increments = 200

    def _worker() -> None:
        for _ in range(increments):
            store.update("shared", lambda current: (current or 0) + 1)

    threads = [threading.Thread(target=_worker) for _ in range(workers)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert store.get("shared") == workers * increments


def test_delete_purge_and_clear(clock) -> None:
    store = TTLCacheStore(ttl_seconds=10, clock=clock)
    store.put("a", 1)
    store.put("b", 2, ttl_seconds=1)
    store.put("c", 3)

    assert store.delete("a") is True
    assert store.delete("a") is False

    clock.advance(2)
    assert store.purge_expired() == 1
    assert len(store) == 1

    store.get("c")
    store.clear()

    stats = store.stats()
    assert stats["entries"] == 0
    assert stats["hits"] == 0
    assert stats["misses"] == 0
    assert stats["evictions"] == 0


@pytest.mark.asyncio
async def test_get_or_compute_runs_compute_once_for_concurrent_callers() -> None:
    store = TTLCacheStore(ttl_seconds=60)
    calls = 0
    release = asyncio.Event()

    async def _compute() -> str:
        nonlocal calls
        calls += 1
        await release.wait()
        return "value"

    tasks = [asyncio.create_task(store.get_or_compute("k", _compute)) for _ in range(5)]
    await asyncio.sleep(0)
    assert store.in_flight("k") is True

    release.set()
    results = await asyncio.gather(*tasks)

    assert calls == 1
    assert [value for value, _ in results] == ["value"] * 5
    assert sum(1 for _, computed in results if computed) == 1
    assert store.get("k") == "value"
    assert store.in_flight("k") is False


@pytest.mark.asyncio
async def test_get_or_compute_returns_cached_value_without_computing() -> None:
    store = TTLCacheStore(ttl_seconds=60)
    store.put("k", "cached")

    async def _compute() -> str:
        raise AssertionError("must not run")

    assert await store.get_or_compute("k", _compute) == ("cached", False)


@pytest.mark.asyncio
async def test_get_or_compute_skips_storing_rejected_values() -> None:
    store = TTLCacheStore(ttl_seconds=60)

    async def _compute() -> int:
        return 500

    value, computed = await store.get_or_compute(
        "k", _compute, cache_if=lambda v: v < 300
    )

    assert (value, computed) == (500, True)
    assert store.get("k") is None


@pytest.mark.asyncio
async def test_failed_compute_stores_nothing_and_waiter_takes_over() -> None:
    store = TTLCacheStore(ttl_seconds=60)
    leader_started = asyncio.Event()
    fail_leader = asyncio.Event()
    attempts = 0

    async def _compute() -> str:
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            leader_started.set()
            await fail_leader.wait()
            raise RuntimeError("boom")
        return "second"

    leader = asyncio.create_task(store.get_or_compute("k", _compute))
    await leader_started.wait()
    follower = asyncio.create_task(store.get_or_compute("k", _compute))
    await asyncio.sleep(0)

    fail_leader.set()
    with pytest.raises(RuntimeError):
        await leader

    assert await follower == ("second", True)
    assert attempts == 2
    assert store.get("k") == "second"


@pytest.mark.asyncio
async def test_cancelled_compute_leaves_no_entry() -> None:
    store = TTLCacheStore(ttl_seconds=60)
    started = asyncio.Event()

    async def _compute() -> str:
        started.set()
        await asyncio.sleep(10)
        return "never"

    task = asyncio.create_task(store.get_or_compute("k", _compute))
    await started.wait()
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert store.get("k") is None
    assert store.in_flight("k") is False


@pytest.mark.asyncio
async def test_drain_waits_for_in_flight_computations() -> None:
    store = TTLCacheStore(ttl_seconds=60)
    release = asyncio.Event()

    async def _compute() -> str:
        await release.wait()
        return "done"

    task = asyncio.create_task(store.get_or_compute("k", _compute))
    await asyncio.sleep(0)

    assert await store.drain(timeout=0.01) == 1

    release.set()
    assert await store.drain(timeout=1) == 0
    await task
    assert store.get("k") == "done"
