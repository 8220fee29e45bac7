from __future__ import annotations

from music_catalog.api.routes.catalog import API_V1_PREFIX, ROUTE_POLICIES
from music_catalog.api.routes.catalog import router as catalog_router
from music_catalog.api.routes.health import router as health_router

__all__ = ["API_V1_PREFIX", "ROUTE_POLICIES", "catalog_router", "health_router"]
