"""Tests for global exception handlers.

Validates that all exception types are handled consistently with
proper HTTP status codes, error format, and no information leakage.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, Field

from music_catalog.core.errors import (
    AppError,
    ConflictAppError,
    IdempotencyKeyMissingError,
    NotFoundAppError,
    RateLimitExceededError,
    ServiceUnavailableAppError,
    ValidationAppError,
)
from music_catalog.core.exception_handlers import (
    render_app_error,
    setup_exception_handlers,
    status_code_for,
)
from music_catalog.core.logging import clear_request_id, set_request_id


@pytest.fixture
def app_with_handlers() -> FastAPI:
    """Create FastAPI app with exception handlers registered."""
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    """Create test client with handlers enabled."""
    return TestClient(app_with_handlers, raise_server_exceptions=False)


class TestStatusMapping:
    @pytest.mark.parametrize(
        ("error_cls", "expected"),
        [
            (AppError, 400),
            (ValidationAppError, 400),
            (IdempotencyKeyMissingError, 400),
            (NotFoundAppError, 404),
            (ConflictAppError, 409),
            (RateLimitExceededError, 429),
            (ServiceUnavailableAppError, 503),
        ],
    )
    def test_status_code_for(self, error_cls: type, expected: int) -> None:
        assert status_code_for(error_cls(code="c", message="m")) == expected

    def test_render_app_error_includes_headers_and_request_id(self) -> None:
        set_request_id("req-42")
        try:
            response = render_app_error(
                RateLimitExceededError(code="rate_limit_exceeded", message="Slow down.", retry_after_seconds=7),
                headers={"Retry-After": "7"},
            )
        finally:
            clear_request_id()

        data = json.loads(bytes(response.body).decode())
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "7"
        assert data["error"]["request_id"] == "req-42"
        assert "details" not in data["error"]


class TestAppErrorHandler:
    """Test handler for AppError and subclasses."""

    def test_validation_error_returns_400(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify ValidationAppError returns HTTP 400."""
        @app_with_handlers.get("/test-validation")
        async def test_endpoint():
            raise ValidationAppError(
                code="test_validation",
                message="Test validation error"
            )

        response = client.get("/test-validation")

        assert response.status_code == 400
        data = response.json()
        assert data["error"]["code"] == "test_validation"
        assert data["error"]["message"] == "Test validation error"
        assert "request_id" in data["error"]

    def test_conflict_error_includes_details(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify details are passed through when provided."""
        @app_with_handlers.delete("/test-conflict")
        async def test_endpoint():
            raise ConflictAppError(
                code="artist_has_songs",
                message="Artist still has songs",
                details={"resource": "artist", "resource_id": 3, "linked_songs": 2},
            )

        response = client.delete("/test-conflict")

        assert response.status_code == 409
        data = response.json()
        assert data["error"]["details"]["linked_songs"] == 2

    def test_not_found_error_returns_404(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-missing")
        async def test_endpoint():
            raise NotFoundAppError(code="song_not_found", message="Song 1 does not exist.")

        response = client.get("/test-missing")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "song_not_found"

    def test_request_validation_errors_use_envelope(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify body validation failures become 400 validation_error."""

        class Payload(BaseModel):
            name: str = Field(..., min_length=2)

        @app_with_handlers.post("/test-body")
        async def test_endpoint(payload: Payload):
            return payload

        response = client.post("/test-body", json={"name": "x"})

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"]["errors"][0].startswith("name: ")

    def test_error_response_format_is_consistent(self, client: TestClient, app_with_handlers: FastAPI):
        """Verify error responses have consistent JSON structure."""
        @app_with_handlers.get("/test-format")
        async def test_endpoint():
            raise ValidationAppError(code="test", message="test")

        response = client.get("/test-format")
        data = response.json()

        # Required fields always present
        assert "error" in data
        assert "code" in data["error"]
        assert "message" in data["error"]
        assert "request_id" in data["error"]


class TestGeneralExceptionHandler:
    """Test fallback handler for unexpected exceptions."""

    def test_unexpected_exception_returns_opaque_500(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/test-crash")
        async def test_endpoint():
            raise RuntimeError("catalog lock poisoned")

        response = client.get("/test-crash")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal_server_error"
        assert "poisoned" not in response.text

    def test_general_exception_handler_never_leaks_stack_trace(self):
        """Verify stack traces are never included in response."""
        from music_catalog.core.exception_handlers import general_exception_handler

        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        exc = ValueError("Test error with details")
        response = asyncio.run(general_exception_handler(request, exc))

        response_body = response.body if isinstance(response.body, bytes) else bytes(response.body)
        response_text = response_body.decode()
        # No traceback indicators
        assert "Traceback" not in response_text
        assert "File \"" not in response_text
        assert "ValueError" not in response_text


class TestErrorHandlerIntegration:
    """Integration tests for exception handler setup."""

    def test_setup_exception_handlers_registers_handlers(self, app_with_handlers: FastAPI):
        """Verify setup_exception_handlers properly registers handlers."""
        assert AppError in app_with_handlers.exception_handlers
        assert Exception in app_with_handlers.exception_handlers

    def test_multiple_handler_setups_does_not_fail(self):
        """Verify calling setup_exception_handlers multiple times is safe."""
        app = FastAPI()

        setup_exception_handlers(app)
        setup_exception_handlers(app)  # Second call should override safely

        assert AppError in app.exception_handlers
