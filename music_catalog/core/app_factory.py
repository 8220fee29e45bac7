"""Application factory for FastAPI app.

Centralizes app construction (metadata, stores, interceptors, handlers,
routers) so tests can build isolated apps with their own settings.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from music_catalog.adapters.rate_limit import FixedWindowRateLimiter, RateWindowCounter
from music_catalog.api.routes import (
    API_V1_PREFIX,
    ROUTE_POLICIES,
    catalog_router,
    health_router,
)
from music_catalog.core.config import Settings, settings as default_settings
from music_catalog.core.exception_handlers import setup_exception_handlers
from music_catalog.core.fault_tolerance import FaultToleranceRegistry
from music_catalog.core.idempotency import CacheEntry, IdempotencyInterceptor
from music_catalog.core.logging import configure_logging
from music_catalog.core.middleware import request_id_middleware
from music_catalog.core.openapi import apply_openapi_customizations
from music_catalog.core.pipeline import InterceptorPipeline
from music_catalog.core.rate_limit import RateLimitInterceptor
from music_catalog.services.catalog_repository import CatalogRepository
from music_catalog.utils.cache_store import TTLCacheStore

logger = logging.getLogger(__name__)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application instance.

    Args:
        settings: Settings to build from (defaults to the process settings).

    Returns:
        Configured FastAPI app with stores, interceptors, handlers and routers.
    """
    settings = settings or default_settings
    app_cfg = settings.app

    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    idempotency_store: TTLCacheStore[CacheEntry] = TTLCacheStore(
        name="idempotency",
        ttl_seconds=app_cfg.idempotency_ttl_seconds,
        max_entries=app_cfg.idempotency_max_entries,
    )
    rate_limit_store: TTLCacheStore[RateWindowCounter] = TTLCacheStore(
        name="rate_limit",
        ttl_seconds=app_cfg.rate_limit_window_seconds,
        max_entries=app_cfg.rate_limit_max_clients,
    )
    limiter = FixedWindowRateLimiter(
        limit=app_cfg.rate_limit_requests,
        window_seconds=app_cfg.rate_limit_window_seconds,
        store=rate_limit_store,
    )

    # First interceptor is outermost: throttled requests never reach replay.
    pipeline = InterceptorPipeline(
        [
            RateLimitInterceptor(
                limiter,
                path_prefix=app_cfg.rate_limit_path_prefix,
                client_header=app_cfg.rate_limit_client_header,
                trust_forwarded_for=app_cfg.rate_limit_trust_forwarded_for,
                default_client=app_cfg.rate_limit_default_client,
                enabled=app_cfg.rate_limit_enabled,
            ),
            IdempotencyInterceptor(
                idempotency_store,
                header_name=app_cfg.idempotency_header,
                ttl_seconds=app_cfg.idempotency_ttl_seconds,
                max_key_length=app_cfg.idempotency_max_key_length,
                max_body_bytes=app_cfg.idempotency_max_body_bytes,
                enabled=app_cfg.idempotency_enabled,
                drain_timeout_seconds=app_cfg.shutdown_drain_seconds,
            ),
        ],
        policies=ROUTE_POLICIES,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "app.startup",
            extra={
                "app_env": settings.app_env,
                "rate_limit_enabled": app_cfg.rate_limit_enabled,
                "idempotency_enabled": app_cfg.idempotency_enabled,
            },
        )
        yield
        await pipeline.shutdown()
        logger.info("app.shutdown", extra={"idempotency_entries": len(idempotency_store)})

    app = FastAPI(
        title="Music Catalog API",
        description=(
            "REST API for a catalog of artists, genres and songs. Mutating "
            "requests are made retry-safe with the Idempotency-Key header and "
            "clients are rate limited per forwarded address."
        ),
        version="0.1.0",
        debug=app_cfg.debug,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.catalog = CatalogRepository()
    app.state.idempotency_store = idempotency_store
    app.state.rate_limit_store = rate_limit_store
    app.state.pipeline = pipeline
    app.state.fault_tolerance = FaultToleranceRegistry()

    # Middleware: the last registered runs outermost, so the request id wraps
    # replayed and rejected responses too.
    app.middleware("http")(pipeline)
    app.middleware("http")(request_id_middleware)

    # Exception handlers
    setup_exception_handlers(app)

    # Routers
    app.include_router(catalog_router, prefix=API_V1_PREFIX)
    app.include_router(health_router)

    # OpenAPI customizations (idempotency header, 429 responses, tags)
    apply_openapi_customizations(
        app,
        policies=ROUTE_POLICIES,
        idempotency_header=app_cfg.idempotency_header,
        rate_limit_prefix=app_cfg.rate_limit_path_prefix if app_cfg.rate_limit_enabled else None,
    )

    return app
