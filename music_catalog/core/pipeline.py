"""Request pipeline adapter: runs interceptors around the route handlers.

Interceptors see every request before the business handler runs (and may
answer it themselves) and see the produced response before it goes back to
the client. ``InterceptorPipeline`` composes them into one Starlette ``http``
middleware, first interceptor outermost:

    pipeline = InterceptorPipeline([rate_limiter, idempotency], policies=ROUTE_POLICIES)
    app.middleware("http")(pipeline)

Which routes get which behavior is declared up front in a ``RoutePolicyTable``
and resolved once per request onto ``request.state.route_policy``.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Iterable, Iterator, Sequence

from fastapi import Request, Response

CallNext = Callable[[Request], Awaitable[Response]]


class IdempotencyMode(str, Enum):
    """How a route treats the idempotency token header."""

    NONE = "none"  # header ignored
    OPTIONAL = "optional"  # deduplicate when the header is sent
    REQUIRED = "required"  # reject requests without the header


@dataclass(frozen=True)
class RoutePolicy:
    """Resilience policies applying to one method + path template.

    Attributes:
        method: HTTP method, or ``*`` for any.
        path: Path template, e.g. ``/api/v1/artists/{artist_id}``.
        idempotency: Token handling for the route.
    """

    method: str
    path: str
    idempotency: IdempotencyMode = IdempotencyMode.NONE


DEFAULT_POLICY = RoutePolicy(method="*", path="*")


def _normalize_path(path: str) -> str:
    return path.rstrip("/") or "/"


def _compile_template(template: str) -> re.Pattern[str]:
    segments = []
    for segment in _normalize_path(template).split("/"):
        if segment.startswith("{") and segment.endswith("}"):
            segments.append("[^/]+")
        else:
            segments.append(re.escape(segment))
    return re.compile("/".join(segments) + r"\Z")


class RoutePolicyTable:
    """Ordered, startup-built mapping of routes to their policies.

    The first matching entry wins; unmatched requests get ``DEFAULT_POLICY``.
    """

    def __init__(self, policies: Iterable[RoutePolicy] = ()) -> None:
        self._entries: list[tuple[RoutePolicy, re.Pattern[str]]] = [
            (policy, _compile_template(policy.path)) for policy in policies
        ]

    def __iter__(self) -> Iterator[RoutePolicy]:
        return (policy for policy, _ in self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def resolve(self, method: str, path: str) -> RoutePolicy:
        method = method.upper()
        path = _normalize_path(path)
        for policy, pattern in self._entries:
            if policy.method not in ("*", method):
                continue
            if pattern.match(path):
                return policy
        return DEFAULT_POLICY


class Interceptor(ABC):
    """A pre/post-dispatch hook around the business handler."""

    @abstractmethod
    async def intercept(self, request: Request, call_next: CallNext) -> Response:
        """Handle the request.

        Work done before awaiting ``call_next`` is the entry phase; returning
        without awaiting it short-circuits the handler. Work done on the
        returned response is the exit phase.
        """

    async def shutdown(self) -> None:
        """Release or drain resources when the application stops."""


class InterceptorPipeline:
    """Starlette ``http`` middleware chaining a sequence of interceptors."""

    def __init__(
        self,
        interceptors: Sequence[Interceptor],
        *,
        policies: RoutePolicyTable | None = None,
    ) -> None:
        self.interceptors = tuple(interceptors)
        self.policies = policies or RoutePolicyTable()

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        request.state.route_policy = self.policies.resolve(request.method, request.url.path)
        return await self._dispatch(0, request, call_next)

    async def _dispatch(self, index: int, request: Request, call_next: CallNext) -> Response:
        if index == len(self.interceptors):
            return await call_next(request)

        async def _next(req: Request) -> Response:
            return await self._dispatch(index + 1, req, call_next)

        return await self.interceptors[index].intercept(request, _next)

    async def shutdown(self) -> None:
        for interceptor in reversed(self.interceptors):
            await interceptor.shutdown()


async def read_body(response: Response) -> bytes:
    """Consume the body of a response produced by ``call_next``."""

    body_iterator = getattr(response, "body_iterator", None)
    if body_iterator is None:
        return bytes(response.body)
    chunks = [chunk async for chunk in body_iterator]
    return b"".join(c if isinstance(c, bytes) else c.encode("utf-8") for c in chunks)


def rebuild_response(response: Response, body: bytes) -> Response:
    """Return a replayable copy of ``response`` whose body was already consumed."""

    rebuilt = Response(content=body, status_code=response.status_code)
    rebuilt.raw_headers = [
        (name, value) for name, value in response.raw_headers if name.lower() != b"content-length"
    ]
    if response.status_code >= 200 and response.status_code not in (204, 304):
        rebuilt.raw_headers.append((b"content-length", str(len(body)).encode("latin-1")))
    return rebuilt
