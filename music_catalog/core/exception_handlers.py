"""Translation of catalog errors into HTTP responses.

Every error leaves the API in one envelope:

    {"error": {"code", "message", "request_id", "details"?}}

- AppError subclasses map to 400, 404, 409, 429 or 503
- Body validation failures become 400 ``validation_error``
- Anything else becomes an opaque 500

The interceptors run as HTTP middleware, outside FastAPI's exception
middleware, so they render their rejections through ``render_app_error``
instead of raising.
"""

import logging

from fastapi import Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from music_catalog.core.errors import (
    AppError,
    ConflictAppError,
    NotFoundAppError,
    RateLimitExceededError,
    ServiceUnavailableAppError,
    ValidationAppError,
)
from music_catalog.core.logging import get_request_id

logger = logging.getLogger(__name__)


def status_code_for(exc: AppError) -> int:
    """Map a domain error to its HTTP status code."""
    status_code = 400
    if isinstance(exc, NotFoundAppError):
        status_code = 404
    elif isinstance(exc, ConflictAppError):
        status_code = 409
    elif isinstance(exc, RateLimitExceededError):
        status_code = 429
    elif isinstance(exc, ServiceUnavailableAppError):
        status_code = 503
    return status_code


def render_app_error(
    exc: AppError,
    *,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    """Build the JSON error envelope for a domain error.

    Args:
        exc: Domain error to render.
        headers: Extra response headers, e.g. Retry-After.

    Returns:
        JSONResponse with the status mapped from the error type.
    """
    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": get_request_id(),
    }

    # details is omitted rather than null when there is no context
    if exc.details:
        error_content["details"] = exc.details

    return JSONResponse(
        status_code=status_code_for(exc),
        content={"error": error_content},
        headers=headers,
    )


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError raised by a route and log it at warning level."""
    headers = None
    if isinstance(exc, RateLimitExceededError) and exc.retry_after_seconds:
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    response = render_app_error(exc, headers=headers)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": response.status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )
    return response


def _violation(error: dict) -> str:
    location = [str(part) for part in error.get("loc", ()) if part != "body"]
    field = location[-1] if location else "body"
    return f"{field}: {error.get('msg', 'invalid value')}"


async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request validation failures in the domain error envelope.

    One ``field: message`` entry per violation, under ``details.errors``.
    """
    errors = [_violation(error) for error in exc.errors()]
    return await app_error_handler(
        request,
        ValidationAppError(
            code="validation_error",
            message="Request validation failed.",
            details={"errors": errors},
        ),
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Answer unexpected failures with a generic 500.

    The exception type and message go to the log only; the client sees a
    fixed message and the request id to quote in a bug report.
    """
    logger.error(
        "unhandled_exception",
        extra={
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "request_path": request.url.path,
            "request_method": request.method,
            "request_id": get_request_id(),
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": get_request_id(),
            }
        },
    )


def setup_exception_handlers(app) -> None:
    """Install the domain, validation and catch-all handlers on app."""
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(RequestValidationError)(request_validation_handler)
    app.exception_handler(Exception)(general_exception_handler)
