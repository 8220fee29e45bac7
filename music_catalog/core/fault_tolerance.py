"""Throttles, timeouts, circuit breaking and fallbacks for async handlers.

Handlers opt in explicitly:

    @router.get("/artists")
    @fault_tolerant(LIST_POLICY)
    async def list_artists(request: Request) -> list[ArtistOut]:
        ...

The breaker keeps a rolling window of the last ``request_volume_threshold``
outcomes:

    CLOSED ──(failure ratio reached)──→ OPEN ──(delay elapsed)──→ HALF_OPEN
      ↑                                                              │
      └───────────────(success_threshold successes)──────────────────┘
                                     └──(any failure)──→ OPEN

Domain errors (``AppError``) are answers, not faults: they are recorded as
successes and propagate unchanged.

Circuit and throttle state belongs to the application (see
``FaultToleranceRegistry``), not to the decorated function.
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from fastapi import Request

from music_catalog.adapters.rate_limit.in_memory import FixedWindowRateLimiter
from music_catalog.core.errors import AppError, RateLimitExceededError

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is rejected because the circuit is OPEN."""

    def __init__(self, name: str, reset_in_seconds: float) -> None:
        self.name = name
        self.reset_in_seconds = reset_in_seconds
        super().__init__(
            f"Circuit '{name}' is open; next probe in ~{reset_in_seconds:.1f}s."
        )


@dataclass(frozen=True)
class CircuitBreakerPolicy:
    """Breaker tuning.

    Attributes:
        request_volume_threshold: Size of the rolling window of outcomes; the
            breaker only trips once the window is full.
        failure_ratio: Fraction of failures in the window that opens it.
        delay_seconds: Time spent OPEN before a probe is let through.
        success_threshold: Consecutive probe successes needed to close.
    """

    request_volume_threshold: int = 20
    failure_ratio: float = 0.5
    delay_seconds: float = 5.0
    success_threshold: int = 1

    def __post_init__(self) -> None:
        if self.request_volume_threshold < 1:
            raise ValueError("request_volume_threshold must be >= 1")
        if not 0 < self.failure_ratio <= 1:
            raise ValueError("failure_ratio must be in (0, 1]")
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be >= 1")


@dataclass(frozen=True)
class ThrottlePolicy:
    """Fixed-window cap on calls to one handler, across all clients.

    Attributes:
        limit: Calls admitted per window.
        window_seconds: Window length in seconds.
    """

    limit: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError("limit must be >= 1")
        if self.window_seconds < 1:
            raise ValueError("window_seconds must be >= 1")


@dataclass(frozen=True)
class FaultTolerancePolicy:
    """What protects one handler.

    Attributes:
        name: Label used for the breaker, the throttle and in log events.
        timeout_seconds: Upper bound on the handler's run time (None: unbounded).
        circuit_breaker: Breaker tuning (None: no breaker).
        throttle: Call cap for the handler (None: unthrottled).
        fallback: Called with the handler's arguments when it fails, times
            out, is throttled or is short-circuited. May be sync or async.
        skip_on: Exception types passed through untouched and counted as
            successes.
    """

    name: str
    timeout_seconds: float | None = None
    circuit_breaker: CircuitBreakerPolicy | None = None
    throttle: ThrottlePolicy | None = None
    fallback: Callable[..., Any] | None = None
    skip_on: tuple[type[BaseException], ...] = (AppError,)


class CircuitBreaker:
    """Thread-safe rolling-window circuit breaker."""

    def __init__(
        self,
        name: str,
        policy: CircuitBreakerPolicy,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.policy = policy
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._outcomes: deque[bool] = deque(maxlen=policy.request_volume_threshold)
        self._opened_at = 0.0
        self._probe_successes = 0
        self._lock = threading.Lock()

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def before_call(self) -> None:
        """Admit a call or raise ``CircuitOpenError``."""

        with self._lock:
            if self._state is not CircuitState.OPEN:
                return
            elapsed = self._clock() - self._opened_at
            if elapsed < self.policy.delay_seconds:
                raise CircuitOpenError(self.name, self.policy.delay_seconds - elapsed)
            self._probe_successes = 0
            self._transition_locked(CircuitState.HALF_OPEN)

    def record_success(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._probe_successes += 1
                if self._probe_successes >= self.policy.success_threshold:
                    self._outcomes.clear()
                    self._transition_locked(CircuitState.CLOSED)
                return
            self._outcomes.append(True)

    def record_failure(self) -> None:
        with self._lock:
            if self._state is CircuitState.HALF_OPEN:
                self._open_locked()
                return
            self._outcomes.append(False)
            if self._state is CircuitState.CLOSED and self._should_trip_locked():
                self._open_locked()

    def reset(self) -> None:
        with self._lock:
            self._outcomes.clear()
            self._probe_successes = 0
            self._state = CircuitState.CLOSED

    def status(self) -> dict[str, Any]:
        with self._lock:
            failures = sum(1 for ok in self._outcomes if not ok)
            return {
                "name": self.name,
                "state": self._state.value,
                "window": len(self._outcomes),
                "failures": failures,
                "request_volume_threshold": self.policy.request_volume_threshold,
                "failure_ratio": self.policy.failure_ratio,
            }

    def _should_trip_locked(self) -> bool:
        if len(self._outcomes) < self.policy.request_volume_threshold:
            return False
        failures = sum(1 for ok in self._outcomes if not ok)
        return failures / len(self._outcomes) >= self.policy.failure_ratio

    def _open_locked(self) -> None:
        self._opened_at = self._clock()
        self._probe_successes = 0
        self._transition_locked(CircuitState.OPEN)

    def _transition_locked(self, new_state: CircuitState) -> None:
        old_state = self._state
        self._state = new_state
        logger.warning(
            "circuit_breaker.transition",
            extra={"breaker": self.name, "from_state": old_state.value, "to_state": new_state.value},
        )


class FaultToleranceRegistry:
    """Breakers and throttles of one application, keyed by policy name.

    Built by the app factory and kept on ``app.state.fault_tolerance`` so two
    applications in one process never share circuit state. Entries are
    created on first use from the policy that asks for them.
    """

    def __init__(self, *, clock: Callable[[], float] | None = None) -> None:
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._throttles: dict[str, FixedWindowRateLimiter] = {}
        self._lock = threading.Lock()

    def breaker(self, policy: FaultTolerancePolicy) -> CircuitBreaker | None:
        if policy.circuit_breaker is None:
            return None
        with self._lock:
            breaker = self._breakers.get(policy.name)
            if breaker is None:
                breaker = CircuitBreaker(
                    policy.name,
                    policy.circuit_breaker,
                    clock=self._clock or time.monotonic,
                )
                self._breakers[policy.name] = breaker
            return breaker

    def throttle(self, policy: FaultTolerancePolicy) -> FixedWindowRateLimiter | None:
        if policy.throttle is None:
            return None
        with self._lock:
            throttle = self._throttles.get(policy.name)
            if throttle is None:
                throttle = FixedWindowRateLimiter(
                    limit=policy.throttle.limit,
                    window_seconds=policy.throttle.window_seconds,
                    clock=self._clock,
                    max_clients=1,
                )
                self._throttles[policy.name] = throttle
            return throttle

    def reset(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
            self._throttles.clear()
        for breaker in breakers:
            breaker.reset()

    def status(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.status() for breaker in breakers}


def _registry_from_request(args: tuple, kwargs: dict) -> FaultToleranceRegistry | None:
    for value in (*args, *kwargs.values()):
        if isinstance(value, Request):
            return getattr(value.app.state, "fault_tolerance", None)
    return None


def fault_tolerant(policy: FaultTolerancePolicy) -> Callable[[F], F]:
    """Wrap an async handler with the throttle, timeout, breaker and fallback of policy.

    The wrapper keeps the handler's signature so FastAPI still resolves its
    parameters. Breakers and throttles come from the registry of the app
    serving the request; handlers called without a ``Request`` (or from an
    app without a registry) use ``wrapper.default_registry``.

    Throttled calls never reach the breaker: they go to the fallback, or
    raise ``RateLimitExceededError`` (429) when there is none.
    """

    def decorator(func: F) -> F:
        default_registry = FaultToleranceRegistry()

        async def _fallback(reason: str, exc: BaseException, args: tuple, kwargs: dict) -> Any:
            if policy.fallback is None:
                raise exc
            logger.warning(
                "fault_tolerance.fallback",
                extra={"policy": policy.name, "reason": reason, "error_type": type(exc).__name__},
            )
            result = policy.fallback(*args, **kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            registry = _registry_from_request(args, kwargs) or default_registry

            throttle = registry.throttle(policy)
            if throttle is not None:
                verdict = throttle.consume(policy.name)
                if not verdict.allowed:
                    exc = RateLimitExceededError(
                        code="handler_rate_limited",
                        message="Too many calls to this endpoint. Try again later.",
                        details={
                            "limit": verdict.limit,
                            "window_seconds": throttle.window_seconds,
                            "retry_after": verdict.retry_after_seconds,
                        },
                        limit=verdict.limit,
                        retry_after_seconds=verdict.retry_after_seconds,
                        reset_at=verdict.reset_at,
                    )
                    return await _fallback("rate_limited", exc, args, kwargs)

            breaker = registry.breaker(policy)
            if breaker is not None:
                try:
                    breaker.before_call()
                except CircuitOpenError as exc:
                    return await _fallback("circuit_open", exc, args, kwargs)

            try:
                if policy.timeout_seconds is None:
                    result = await func(*args, **kwargs)
                else:
                    result = await asyncio.wait_for(
                        func(*args, **kwargs), timeout=policy.timeout_seconds
                    )
            except policy.skip_on:
                if breaker is not None:
                    breaker.record_success()
                raise
            except asyncio.TimeoutError as exc:
                if breaker is not None:
                    breaker.record_failure()
                return await _fallback("timeout", exc, args, kwargs)
            except Exception as exc:
                if breaker is not None:
                    breaker.record_failure()
                return await _fallback("error", exc, args, kwargs)

            if breaker is not None:
                breaker.record_success()
            return result

        wrapper.policy = policy  # type: ignore[attr-defined]
        wrapper.default_registry = default_registry  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]

    return decorator
