"""Tests for sensitive data filtering and correlation in logs."""

from __future__ import annotations

import json
import logging
from io import StringIO

import pytest

from music_catalog.core.logging import (
    JsonFormatter,
    RequestIdFilter,
    SensitiveDataFilter,
    clear_request_id,
    hash_identifier,
    set_request_id,
)


@pytest.fixture
def captured():
    """Logger wired like production, writing JSON lines to a buffer."""

    logger = logging.getLogger("test_redaction")
    logger.setLevel(logging.INFO)
    logger.handlers.clear()
    logger.propagate = False

    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.addFilter(RequestIdFilter())
    handler.addFilter(SensitiveDataFilter())
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)

    yield logger, stream

    logger.handlers.clear()


def test_sensitive_filter_redacts_tokens_and_addresses(captured):
    """Ensure idempotency tokens and client addresses never reach the sink."""

    logger, stream = captured
    logger.info(
        "test_event",
        extra={
            "idempotency_key": "order-7f3a",
            "x-forwarded-for": "203.0.113.7",
            "safe_field": "visible",
        },
    )

    output = stream.getvalue()

    assert "order-7f3a" not in output
    assert "203.0.113.7" not in output
    assert "[REDACTED]" in output
    assert "visible" in output


def test_sensitive_filter_allows_safe_fields(captured):
    """Verify safe fields pass through unmodified."""

    logger, stream = captured
    logger.info(
        "safe_event",
        extra={
            "request_path": "/api/v1/artists",
            "status_code": 201,
            "key_hash": hash_identifier("order-7f3a"),
        },
    )

    payload = json.loads(stream.getvalue())

    assert payload["message"] == "safe_event"
    assert payload["request_path"] == "/api/v1/artists"
    assert payload["status_code"] == 201
    assert "[REDACTED]" not in stream.getvalue()


def test_sensitive_filter_redacts_nested_dicts(captured):
    """Ensure nested sensitive fields are redacted."""

    logger, stream = captured
    logger.info(
        "nested_event",
        extra={
            "headers": {
                "Idempotency-Key": "secret-token",
                "user-agent": "pytest",
            },
        },
    )

    output = stream.getvalue()

    assert "secret-token" not in output
    assert "[REDACTED]" in output
    assert "pytest" in output


def test_request_id_is_attached_from_context(captured):
    logger, stream = captured
    set_request_id("req-123")
    try:
        logger.info("correlated_event")
    finally:
        clear_request_id()

    assert json.loads(stream.getvalue())["request_id"] == "req-123"


def test_hash_identifier_is_stable_and_short():
    assert hash_identifier("10.0.0.1") == hash_identifier("10.0.0.1")
    assert hash_identifier("10.0.0.1") != hash_identifier("10.0.0.2")
    assert len(hash_identifier("10.0.0.1")) == 16
