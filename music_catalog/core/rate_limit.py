"""Rate limiting interceptor.

This module wires the rate limiting adapter into the request pipeline.

Strategy:
- Fixed-window limit per client, keyed by the first hop of the forwarded
  address header (or the socket peer when that header is not trusted).
- Only paths under the configured prefix are counted.
- Rejections are answered before the handler runs, with ``Retry-After`` and
  the ``X-RateLimit-*`` headers; admitted responses carry the remaining quota,
  including the 500 built here when the handler raises unexpectedly.
"""

from __future__ import annotations

import logging

from fastapi import Request, Response

from music_catalog.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from music_catalog.core.errors import RateLimitExceededError
from music_catalog.core.exception_handlers import general_exception_handler, render_app_error
from music_catalog.core.logging import hash_identifier
from music_catalog.core.pipeline import CallNext, Interceptor

logger = logging.getLogger(__name__)


class RateLimitInterceptor(Interceptor):
    """Rejects clients that exceeded their request quota with HTTP 429."""

    def __init__(
        self,
        limiter: AbstractRateLimiter,
        *,
        path_prefix: str = "/api/v1",
        client_header: str = "X-Forwarded-For",
        trust_forwarded_for: bool = True,
        default_client: str = "127.0.0.1",
        enabled: bool = True,
    ) -> None:
        self.limiter = limiter
        self.path_prefix = path_prefix.rstrip("/")
        self.client_header = client_header
        self.trust_forwarded_for = trust_forwarded_for
        self.default_client = default_client
        self.enabled = enabled

    def applies_to(self, path: str) -> bool:
        if not self.path_prefix:
            return True
        return path == self.path_prefix or path.startswith(self.path_prefix + "/")

    def client_key(self, request: Request) -> str:
        """Resolve the identity whose quota the request consumes.

        With forwarded-address trust on, requests without the header share
        the default client's bucket. Otherwise the socket peer is used.
        """

        if self.trust_forwarded_for:
            forwarded = request.headers.get(self.client_header, "")
            first_hop = forwarded.split(",")[0].strip()
            return first_hop or self.default_client

        if request.client and request.client.host:
            return request.client.host
        return self.default_client

    async def intercept(self, request: Request, call_next: CallNext) -> Response:
        if not self.enabled or not self.applies_to(request.url.path):
            return await call_next(request)

        client = self.client_key(request)
        result = self.limiter.consume(client)
        key_hash = hash_identifier(client)

        if not result.allowed:
            return self._reject(request, result, key_hash)

        logger.debug(
            "rate_limit.allowed",
            extra={
                "key_hash": key_hash,
                "limit": result.limit,
                "remaining": result.remaining,
                "window_s": self.limiter.window_seconds,
            },
        )
        request.state.rate_limit_remaining = result.remaining

        try:
            response = await call_next(request)
        except Exception as exc:
            # Handler crashes surface here, past the exception middleware
            response = await general_exception_handler(request, exc)
        response.headers["X-RateLimit-Limit"] = str(result.limit)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        return response

    def _reject(self, request: Request, result: RateLimitResult, key_hash: str) -> Response:
        retry_after = result.retry_after_seconds or 1
        logger.warning(
            "rate_limit.exceeded",
            extra={
                "key_hash": key_hash,
                "limit": result.limit,
                "count": result.count,
                "window_s": self.limiter.window_seconds,
                "retry_after_s": retry_after,
                "request_path": request.url.path,
            },
        )

        exc = RateLimitExceededError(
            code="rate_limit_exceeded",
            message="Rate limit exceeded. Try again later.",
            details={
                "limit": result.limit,
                "window_seconds": self.limiter.window_seconds,
                "retry_after": retry_after,
            },
            limit=result.limit,
            retry_after_seconds=retry_after,
            reset_at=result.reset_at,
        )
        return render_app_error(
            exc,
            headers={
                "Retry-After": str(retry_after),
                "X-RateLimit-Limit": str(result.limit),
                "X-RateLimit-Remaining": "0",
                "X-RateLimit-Reset": str(result.reset_at),
            },
        )
