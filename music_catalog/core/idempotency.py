"""Idempotent replay of mutating requests.

A client retrying a POST sends the same ``Idempotency-Key``. The first
request with a given (method, path, key) runs the handler; its 2xx response
is recorded and every later request with the same fingerprint gets the
recorded status and body back without touching the handler.

Per-request states (``request.state.idempotency``):
- PASSTHROUGH: no token, or the route does not deduplicate.
- REPLAY: a recorded response was found and returned.
- RECORD: no recorded response; the handler ran and its result was captured.

Concurrent requests with one fingerprint share a single handler execution
through ``TTLCacheStore.get_or_compute``. A handler that fails, times out or
is cancelled leaves nothing behind, so the client can retry with the same key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

from fastapi import Request, Response

from music_catalog.core.errors import (
    AppError,
    IdempotencyKeyMissingError,
    ValidationAppError,
)
from music_catalog.core.exception_handlers import render_app_error
from music_catalog.core.logging import hash_identifier
from music_catalog.core.pipeline import (
    CallNext,
    IdempotencyMode,
    Interceptor,
    read_body,
    rebuild_response,
)
from music_catalog.utils.cache_store import TTLCacheStore

logger = logging.getLogger(__name__)

REPLAY_HEADER = "Idempotent-Replayed"


class IdempotencyState(str, Enum):
    PASSTHROUGH = "passthrough"
    REPLAY = "replay"
    RECORD = "record"


class CaptureError(Exception):
    """A successful response could not be recorded for replay."""


@dataclass(frozen=True)
class CacheEntry:
    """Recorded response of a deduplicated request.

    Attributes:
        key: Request fingerprint.
        status_code: Status sent to the first caller.
        body: Exact body bytes sent to the first caller.
        media_type: Content-Type of the body.
        resource_id: Identifier of the created resource, if the handler
            published one with ``mark_created``.
        expires_at: UNIX time after which the entry is no longer replayed.
    """

    key: str
    status_code: int
    body: bytes
    media_type: str | None
    resource_id: str | None
    expires_at: float


def fingerprint(method: str, path: str, token: str) -> str:
    """Build the cache key of a request.

    The path length prefix makes the path/token boundary explicit, so two
    different (path, token) pairs can never produce the same key even when
    one token is a prefix of another or either part contains ``:``.
    """

    return f"{method.upper()}:{len(path)}:{path}:{token}"


def mark_created(request: Request, resource_id: int | str) -> None:
    """Publish the id of a resource created by the current request."""

    request.state.resource_id = resource_id


def location_for(request: Request, resource_id: int | str) -> str:
    """Absolute URL of ``<request path>/<resource_id>``."""

    path = f"{request.url.path.rstrip('/')}/{resource_id}"
    return str(request.url.replace(path=path, query=""))


def _is_success(status_code: int) -> bool:
    return 200 <= status_code < 300


class IdempotencyInterceptor(Interceptor):
    """Replays recorded responses for repeated idempotency tokens."""

    def __init__(
        self,
        store: TTLCacheStore[CacheEntry],
        *,
        header_name: str = "Idempotency-Key",
        ttl_seconds: int = 3600,
        max_key_length: int = 255,
        max_body_bytes: int = 1024 * 1024,
        enabled: bool = True,
        drain_timeout_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.header_name = header_name
        self.ttl_seconds = ttl_seconds
        self.max_key_length = max_key_length
        self.max_body_bytes = max_body_bytes
        self.enabled = enabled
        self.drain_timeout_seconds = drain_timeout_seconds

    async def intercept(self, request: Request, call_next: CallNext) -> Response:
        policy = getattr(request.state, "route_policy", None)
        mode = policy.idempotency if policy is not None else IdempotencyMode.NONE
        request.state.idempotency = IdempotencyState.PASSTHROUGH

        if not self.enabled or mode is IdempotencyMode.NONE:
            return await call_next(request)

        token = (request.headers.get(self.header_name) or "").strip()
        if not token:
            if mode is IdempotencyMode.REQUIRED:
                return self._reject(
                    request,
                    IdempotencyKeyMissingError(
                        code="idempotency_key_required",
                        message=f"The {self.header_name} header is required for this operation.",
                        details={"header": self.header_name},
                    ),
                )
            return await call_next(request)

        if len(token) > self.max_key_length:
            return self._reject(
                request,
                ValidationAppError(
                    code="idempotency_key_too_long",
                    message=f"The {self.header_name} header is too long.",
                    details={
                        "header": self.header_name,
                        "max_length": self.max_key_length,
                        "actual_length": len(token),
                    },
                ),
            )

        key = fingerprint(request.method, request.url.path, token)
        recorded = self.store.get(key)
        if recorded is not None:
            return self._replay(request, recorded)

        request.state.idempotency = IdempotencyState.RECORD
        request.state.idempotency_fingerprint = key
        return await self._record(request, call_next, key)

    async def _record(self, request: Request, call_next: CallNext, key: str) -> Response:
        produced: list[Response] = []

        async def _run_handler() -> CacheEntry:
            response = await call_next(request)
            body = await read_body(response)
            produced.append(rebuild_response(response, body))
            resource_id = getattr(request.state, "resource_id", None)
            return CacheEntry(
                key=key,
                status_code=response.status_code,
                body=body,
                media_type=response.headers.get("content-type"),
                resource_id=str(resource_id) if isinstance(resource_id, (int, str)) else None,
                expires_at=self.store.clock() + self.ttl_seconds,
            )

        def _recordable(entry: CacheEntry) -> bool:
            if not _is_success(entry.status_code):
                logger.info(
                    "idempotency.not_recorded",
                    extra={"key_hash": hash_identifier(key), "status_code": entry.status_code},
                )
                return False
            try:
                self._check_capturable(request, entry)
            except CaptureError as exc:
                logger.warning(
                    "idempotency.capture_failed",
                    extra={"key_hash": hash_identifier(key), "reason": str(exc)},
                )
                return False
            logger.info(
                "idempotency.recorded",
                extra={
                    "key_hash": hash_identifier(key),
                    "status_code": entry.status_code,
                    "ttl_s": self.ttl_seconds,
                },
            )
            return True

        entry, computed = await self.store.get_or_compute(
            key,
            _run_handler,
            ttl_seconds=self.ttl_seconds,
            cache_if=_recordable,
        )
        if computed:
            return produced[0]

        # Another request with this fingerprint ran the handler meanwhile.
        # Its error responses are shared but were never recorded, so they are
        # not flagged as replays.
        return self._replay(request, entry, replayed=_is_success(entry.status_code))

    def _check_capturable(self, request: Request, entry: CacheEntry) -> None:
        if len(entry.body) > self.max_body_bytes:
            raise CaptureError(
                f"body of {len(entry.body)} bytes exceeds {self.max_body_bytes} bytes"
            )
        resource_id = getattr(request.state, "resource_id", None)
        if resource_id is not None and entry.resource_id is None:
            raise CaptureError(f"unsupported resource id type {type(resource_id).__name__}")

    def _replay(self, request: Request, entry: CacheEntry, *, replayed: bool = True) -> Response:
        request.state.idempotency = IdempotencyState.REPLAY
        headers = {REPLAY_HEADER: "true"} if replayed else {}
        if entry.status_code == 201 and entry.resource_id is not None:
            headers["Location"] = location_for(request, entry.resource_id)

        logger.info(
            "idempotency.replay" if replayed else "idempotency.shared",
            extra={"key_hash": hash_identifier(entry.key), "status_code": entry.status_code},
        )
        return Response(
            content=entry.body,
            status_code=entry.status_code,
            headers=headers,
            media_type=entry.media_type,
        )

    def _reject(self, request: Request, exc: AppError) -> Response:
        logger.info(
            "idempotency.rejected",
            extra={
                "error_code": exc.code,
                "request_method": request.method,
                "request_path": request.url.path,
            },
        )
        return render_app_error(exc)

    async def shutdown(self) -> None:
        await self.store.drain(self.drain_timeout_seconds)
