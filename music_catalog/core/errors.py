"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    header: str
    max_length: int
    actual_length: int
    limit: int
    window_seconds: int
    retry_after: int
    resource: str
    resource_id: int
    linked_songs: int
    request_id: str
    errors: list[str]
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class IdempotencyKeyMissingError(ValidationAppError):
    """Raised when a route requires an idempotency token and none was sent."""


class NotFoundAppError(AppError):
    """Raised when a referenced catalog resource does not exist."""


class ConflictAppError(AppError):
    """Raised when an operation conflicts with the current catalog state."""


class ServiceUnavailableAppError(AppError):
    """Raised when a dependency is degraded and no fallback applies."""


@dataclass
class RateLimitExceededError(AppError):
    """Raised when a client exhausted its quota for the current window.

    Attributes:
        limit: Max requests per window.
        retry_after_seconds: Seconds until the window resets.
        reset_at: UNIX epoch seconds when the window resets.
    """

    limit: int = 0
    retry_after_seconds: int = 0
    reset_at: int = 0
