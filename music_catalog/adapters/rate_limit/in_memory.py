"""In-memory fixed-window rate limiter.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- A window opens with the first request of a client and lasts
  ``window_seconds``; the counter resets with the first request after it ends.
  Bursts of ``2 * limit`` across a window boundary are therefore possible.
- Every request is counted, rejected ones included, so a client hammering a
  closed window does not gain quota.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable

from music_catalog.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from music_catalog.utils.cache_store import TTLCacheStore


@dataclass(frozen=True)
class RateWindowCounter:
    """Request count of one client in its current window."""

    client_key: str
    count: int
    window_start: float


class FixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter counting requests per client in fixed windows.

    Counters live in a ``TTLCacheStore`` whose entries expire when their
    window ends, so idle clients do not accumulate.
    """

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: int,
        store: TTLCacheStore[RateWindowCounter] | None = None,
        clock: Callable[[], float] | None = None,
        max_clients: int = 10000,
    ) -> None:
        """Initialize the limiter.

        Args:
            limit: Maximum number of allowed units per window.
            window_seconds: Length of a window in seconds.
            store: Counter store; built privately when omitted.
            clock: Time source (UNIX seconds). Defaults to the store's clock.
            max_clients: Capacity of the private store.

        Raises:
            ValueError: If limit or window_seconds are invalid.
        """
        if limit < 1:
            raise ValueError("limit must be >= 1")
        if window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")

        if store is None:
            store = TTLCacheStore(
                name="rate_limit",
                ttl_seconds=window_seconds,
                max_entries=max_clients,
                clock=clock or time.time,
            )
        self._limit = limit
        self._window_seconds = window_seconds
        self._store = store
        self._clock = clock or store.clock

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_seconds(self) -> int:
        return self._window_seconds

    @property
    def store(self) -> TTLCacheStore[RateWindowCounter]:
        return self._store

    def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Count a request for key and decide whether it is admitted.

        Raises:
            ValueError: If key is empty or cost is invalid.
        """
        if cost < 1:
            raise ValueError("cost must be >= 1")
        if not key:
            raise ValueError("key must be a non-empty string")

        now = self._clock()

        def _increment(counter: RateWindowCounter | None) -> RateWindowCounter:
            if counter is None or now >= counter.window_start + self._window_seconds:
                return RateWindowCounter(client_key=key, count=cost, window_start=now)
            return RateWindowCounter(
                client_key=key,
                count=counter.count + cost,
                window_start=counter.window_start,
            )

        counter = self._store.update(
            key,
            _increment,
            ttl_seconds=lambda c: max(c.window_start + self._window_seconds - now, 0.001),
        )

        window_end = counter.window_start + self._window_seconds
        remaining = max(0, self._limit - counter.count)
        if counter.count <= self._limit:
            return RateLimitResult(
                allowed=True,
                limit=self._limit,
                count=counter.count,
                remaining=remaining,
                reset_at=int(math.ceil(window_end)),
                retry_after_seconds=None,
            )

        retry_after = min(self._window_seconds, max(1, int(math.ceil(window_end - now))))
        return RateLimitResult(
            allowed=False,
            limit=self._limit,
            count=counter.count,
            remaining=0,
            reset_at=int(math.ceil(window_end)),
            retry_after_seconds=retry_after,
        )
