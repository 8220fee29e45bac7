"""Runtime settings for the music catalog API.

Values come from the process environment, optionally seeded from a
``.env.<APP_ENV>`` file at the project root. ``LOG_`` variables tune
logging; ``APP_`` variables tune rate limiting, idempotent replay and
shutdown.
"""

from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


APP_ENV = os.getenv("APP_ENV", "development")

PROJECT_ROOT = Path(__file__).resolve().parents[2]

ENV_FILE_MAP = {
    "development": ".env.development",
    "testing": ".env.testing",
    "staging": ".env.staging",
    "production": ".env.production",
}

_env_path = PROJECT_ROOT / ENV_FILE_MAP.get(APP_ENV, ".env.development")
_env_file = str(_env_path) if _env_path.is_file() else None

# Nested BaseSettings ignore env_file, so the file is pushed into os.environ.
if _env_file:
    from dotenv import load_dotenv
    load_dotenv(_env_file, override=True)


def _build_app_settings() -> "AppSettings":
    """Read APP_* variables; every field has a default."""

    return AppSettings()  # type: ignore[call-arg]


def _build_log_settings() -> "LogSettings":
    return LogSettings()  # type: ignore[call-arg]


class LogSettings(BaseSettings):
    """Logging output configuration."""

    level: str = Field("INFO", description="Root log level")
    format: str = Field(
        "json",
        description="Log format: 'json' (structured) or 'plain'",
    )
    output: str = Field(
        "stdout",
        description="Log destination: 'stdout' or 'file'",
    )
    file_path: str | None = Field(
        None,
        description="Log file path when output=file (default logs/app.log)",
    )
    max_bytes: int = Field(
        0,
        description="Rotate the log file after this many bytes (0 disables rotation)",
        ge=0,
    )
    backup_count: int = Field(
        3,
        description="Number of rotated log files to keep",
        ge=0,
    )
    request_id_header: str = Field(
        "X-Request-ID",
        description="Header used to read and echo the request correlation id",
    )

    model_config = SettingsConfigDict(
        env_prefix="LOG_",
        case_sensitive=False,
    )


class AppSettings(BaseSettings):
    """Application-wide configuration."""

    debug: bool = Field(
        False,
        description="Enable debug mode with verbose logging",
    )

    rate_limit_enabled: bool = Field(
        True,
        description="Enable per-client rate limiting",
    )
    rate_limit_requests: int = Field(
        10,
        description="Maximum number of requests allowed per window (per client)",
        ge=1,
    )
    rate_limit_window_seconds: int = Field(
        60,
        description="Rate limit window size in seconds",
        ge=1,
    )
    rate_limit_path_prefix: str = Field(
        "/api/v1",
        description="Only paths under this prefix are rate limited",
    )
    rate_limit_client_header: str = Field(
        "X-Forwarded-For",
        description="Header carrying the caller address (set by the reverse proxy)",
    )
    rate_limit_trust_forwarded_for: bool = Field(
        True,
        description=(
            "Derive the client identity from the forwarded-address header. The header is "
            "client-controlled unless a trusted proxy overwrites it; disable to use the "
            "socket peer address instead"
        ),
    )
    rate_limit_default_client: str = Field(
        "127.0.0.1",
        description="Client identity used when no address can be derived (shared bucket)",
    )
    rate_limit_max_clients: int = Field(
        10000,
        description="Maximum number of tracked client windows",
        ge=1,
    )

    idempotency_enabled: bool = Field(
        True,
        description="Enable replay of responses for repeated idempotency keys",
    )
    idempotency_header: str = Field(
        "Idempotency-Key",
        description="Header carrying the client-supplied idempotency token",
    )
    idempotency_ttl_seconds: int = Field(
        3600,
        description="How long a recorded response can be replayed",
        ge=1,
    )
    idempotency_max_entries: int = Field(
        1000,
        description="Maximum number of recorded responses kept in memory",
        ge=1,
    )
    idempotency_max_key_length: int = Field(
        255,
        description="Longest accepted idempotency token",
        ge=1,
    )
    idempotency_max_body_bytes: int = Field(
        1024 * 1024,
        description="Responses with larger bodies are served but not recorded",
        ge=0,
    )

    shutdown_drain_seconds: float = Field(
        5.0,
        description="How long shutdown waits for in-flight recorded requests",
        ge=0,
    )

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        case_sensitive=False,
    )


class Settings(BaseSettings):
    """Top-level settings object handed to ``create_app``.

    Invalid values fail fast with a pydantic ValidationError at import or
    construction time, before the server starts accepting requests.
    """

    app_env: str = APP_ENV
    app: AppSettings = Field(default_factory=_build_app_settings)
    log: LogSettings = Field(default_factory=_build_log_settings)

    model_config = SettingsConfigDict(
        case_sensitive=False,
    )


# Process-wide defaults; tests build their own Settings instead.
settings = Settings()
