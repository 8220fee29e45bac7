"""In-memory TTL store shared by the request interceptors.

Holds recorded idempotent responses and rate-limit window counters. Designed
to be constructed once at startup and injected where needed; a Redis-backed
store could replace it behind the same methods.

Concurrency model:
- A structure lock guards the ordered map and is only held for O(1) work
  (plus an expiry sweep when the store is at capacity).
- Per-key atomicity comes from striped key locks; ``update`` runs its
  function under the key's stripe only.
- ``get_or_compute`` deduplicates concurrent computations of one key with an
  asyncio future; the computation itself runs with no lock held. It must be
  awaited from a single event loop.

Stored values must not be ``None`` (``None`` means "miss").
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable, Generic, TypeVar, Union

logger = logging.getLogger(__name__)

V = TypeVar("V")

TTL = Union[float, Callable[[V], float], None]

# Settles an in-flight future when the leader failed; waiters then retry.
_ABANDONED = object()


@dataclass
class CacheItem(Generic[V]):
    """Container for cached values with expiration metadata."""

    value: V
    expires_at: float


class TTLCacheStore(Generic[V]):
    """Thread-safe, in-memory TTL store with LRU eviction.

    Attributes:
        name: Label used in log events.
        ttl_seconds: Default time-to-live applied to entries.
        max_entries: Maximum number of live entries (None for unlimited).
    """

    def __init__(
        self,
        *,
        name: str = "cache",
        ttl_seconds: float = 3600,
        max_entries: int | None = 1024,
        clock: Callable[[], float] = time.time,
        lock_stripes: int = 64,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be > 0")
        if max_entries is not None and max_entries < 1:
            raise ValueError("max_entries must be >= 1 or None")
        if lock_stripes < 1:
            raise ValueError("lock_stripes must be >= 1")

        self.name = name
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._clock = clock
        self._store: OrderedDict[str, CacheItem[V]] = OrderedDict()
        self._lock = threading.Lock()
        self._key_locks = tuple(threading.Lock() for _ in range(lock_stripes))
        self._inflight: dict[str, asyncio.Future] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return (
            f"TTLCacheStore(name={self.name!r}, ttl_seconds={self._ttl}, "
            f"max_entries={self._max_entries}, size={len(self._store)})"
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._store)

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def get(self, key: str) -> V | None:
        """Return the live value for key, or None if missing/expired.

        Expired entries are evicted on read.
        """

        with self._lock:
            item = self._live_item_locked(key, self._clock())
            if item is None:
                self._misses += 1
                return None
            self._hits += 1
            self._store.move_to_end(key)  # mark as recently used
            return item.value

    def put(self, key: str, value: V, ttl_seconds: TTL = None) -> None:
        """Store value under key, replacing any previous entry.

        Args:
            key: Cache key.
            value: Value to store (never None).
            ttl_seconds: Override of the default TTL, or a function of the value.
        """

        if value is None:
            raise ValueError("cannot store None")
        with self._key_lock(key):
            self._write(key, value, ttl_seconds)

    def update(self, key: str, fn: Callable[[V | None], V], ttl_seconds: TTL = None) -> V:
        """Atomically replace the value of key with ``fn(current)``.

        ``fn`` receives None when the key is missing or expired. Concurrent
        updates of the same key are serialized; other keys are not blocked.

        Returns:
            The value written.
        """

        with self._key_lock(key):
            with self._lock:
                item = self._live_item_locked(key, self._clock())
                current = item.value if item is not None else None
            new_value = fn(current)
            self._write(key, new_value, ttl_seconds)
            return new_value

    async def get_or_compute(
        self,
        key: str,
        compute: Callable[[], Awaitable[V]],
        *,
        ttl_seconds: TTL = None,
        cache_if: Callable[[V], bool] | None = None,
    ) -> tuple[V, bool]:
        """Return the cached value for key, computing it at most once at a time.

        The first caller for a missing key runs ``compute``; callers arriving
        while it runs wait for its value instead of computing their own. The
        value is stored only when ``cache_if`` accepts it (default: always).
        If ``compute`` raises or is cancelled nothing is stored, the exception
        propagates to that caller only, and one of the waiters takes over.

        Returns:
            Tuple of (value, computed_by_this_caller).
        """

        while True:
            with self._key_lock(key):
                cached = self.get(key)
                if cached is not None:
                    return cached, False
                pending = self._inflight.get(key)
                if pending is None:
                    pending = asyncio.get_running_loop().create_future()
                    self._inflight[key] = pending
                    break

            outcome = await asyncio.shield(pending)
            if outcome is not _ABANDONED:
                return outcome, False
            logger.debug("cache.compute_retry", extra={"cache": self.name})

        try:
            value = await compute()
        except BaseException:
            self._settle(key, pending, _ABANDONED)
            raise

        if cache_if is None or cache_if(value):
            self.put(key, value, ttl_seconds)
        self._settle(key, pending, value)
        return value, True

    def in_flight(self, key: str) -> bool:
        with self._key_lock(key):
            return key in self._inflight

    async def drain(self, timeout: float | None = None) -> int:
        """Wait for in-flight computations to settle (shutdown step).

        Returns:
            Number of computations still running when the timeout elapsed.
        """

        pending = [f for f in list(self._inflight.values()) if not f.done()]
        if not pending:
            return 0
        _, not_done = await asyncio.wait(pending, timeout=timeout)
        logger.info(
            "cache.drained",
            extra={"cache": self.name, "waited": len(pending), "unfinished": len(not_done)},
        )
        return len(not_done)

    def delete(self, key: str) -> bool:
        with self._key_lock(key):
            with self._lock:
                return self._store.pop(key, None) is not None

    def purge_expired(self) -> int:
        """Evict every expired entry now; returns how many were removed."""

        with self._lock:
            return self._evict_expired_locked(self._clock())

    def clear(self) -> None:
        """Remove all cached entries and reset counters."""

        with self._lock:
            self._store.clear()
            self._hits = 0
            self._misses = 0
            self._evictions = 0

    def stats(self) -> dict[str, int | float | str | None]:
        """Return lightweight cache metrics without exposing values."""

        with self._lock:
            return {
                "name": self.name,
                "ttl_seconds": self._ttl,
                "max_entries": self._max_entries,
                "entries": len(self._store),
                "in_flight": len(self._inflight),
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
            }

    def _key_lock(self, key: str) -> threading.Lock:
        return self._key_locks[hash(key) % len(self._key_locks)]

    def _settle(self, key: str, pending: asyncio.Future, outcome: object) -> None:
        with self._key_lock(key):
            if self._inflight.get(key) is pending:
                del self._inflight[key]
        if not pending.done():
            pending.set_result(outcome)

    def _write(self, key: str, value: V, ttl_seconds: TTL) -> None:
        # Caller holds the key's stripe lock.
        if callable(ttl_seconds):
            ttl = ttl_seconds(value)
        else:
            ttl = self._ttl if ttl_seconds is None else ttl_seconds
        with self._lock:
            now = self._clock()
            self._store[key] = CacheItem(value=value, expires_at=now + ttl)
            self._store.move_to_end(key)
            self._enforce_capacity_locked(now)

    def _live_item_locked(self, key: str, now: float) -> CacheItem[V] | None:
        item = self._store.get(key)
        if item is None:
            return None
        if item.expires_at <= now:
            self._store.pop(key, None)
            self._evictions += 1
            return None
        return item

    def _evict_expired_locked(self, now: float) -> int:
        expired_keys = [k for k, item in self._store.items() if item.expires_at <= now]
        for key in expired_keys:
            self._store.pop(key, None)
        self._evictions += len(expired_keys)
        return len(expired_keys)

    def _enforce_capacity_locked(self, now: float) -> None:
        if self._max_entries is None or len(self._store) <= self._max_entries:
            return

        # Expired entries go first, then least recently used ones.
        self._evict_expired_locked(now)
        while len(self._store) > self._max_entries:
            key, _ = self._store.popitem(last=False)
            self._evictions += 1
            logger.debug("cache.evicted", extra={"cache": self.name, "reason": "capacity"})
