"""Rate limiter interfaces.

The interceptor depends on this abstraction so the counter storage can move
to a shared backend without touching the HTTP layer.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of consuming one unit of a client's quota.

    Attributes:
        allowed: Whether the request is admitted.
        limit: Max requests per window.
        count: Requests counted in the current window, this one included.
        remaining: ``max(0, limit - count)``.
        reset_at: UNIX epoch seconds when the current window ends.
        retry_after_seconds: Seconds until the window ends (set when blocked).
    """

    allowed: bool
    limit: int
    count: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None


class AbstractRateLimiter(ABC):
    """Interface for rate limiters."""

    @property
    @abstractmethod
    def limit(self) -> int:
        """Maximum number of requests per window."""

    @property
    @abstractmethod
    def window_seconds(self) -> int:
        """Window length in seconds."""

    @abstractmethod
    def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Count a request against the quota of ``key``.

        Args:
            key: Client identity (e.g. forwarded address).
            cost: Units to consume (default 1).

        Returns:
            RateLimitResult describing whether it was allowed.
        """
        raise NotImplementedError
