"""Rate limiting adapters.

A small abstraction layer so the in-memory limiter can later be replaced by
one backed by a shared store without changing the interceptor.
"""

from music_catalog.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from music_catalog.adapters.rate_limit.in_memory import FixedWindowRateLimiter, RateWindowCounter

__all__ = [
    "AbstractRateLimiter",
    "FixedWindowRateLimiter",
    "RateLimitResult",
    "RateWindowCounter",
]
