"""Tests for application wiring: stores, settings and OpenAPI docs."""

from __future__ import annotations

from fastapi import FastAPI
from fastapi.testclient import TestClient

from music_catalog.core.app_factory import create_app
from music_catalog.utils.cache_store import TTLCacheStore


def test_stores_are_built_from_settings(make_settings) -> None:
    app = create_app(
        make_settings(idempotency_ttl_seconds=120, idempotency_max_entries=5, rate_limit_window_seconds=30)
    )

    idempotency = app.state.idempotency_store.stats()
    rate_limit = app.state.rate_limit_store.stats()
    assert isinstance(app.state.idempotency_store, TTLCacheStore)
    assert idempotency["ttl_seconds"] == 120
    assert idempotency["max_entries"] == 5
    assert rate_limit["ttl_seconds"] == 30


def test_apps_do_not_share_state(make_settings) -> None:
    first = create_app(make_settings())
    second = create_app(make_settings())

    assert first.state.catalog is not second.state.catalog
    assert first.state.idempotency_store is not second.state.idempotency_store


def test_lowered_limit_applies(make_settings) -> None:
    app = create_app(make_settings(rate_limit_requests=2))

    with TestClient(app) as client:
        statuses = [client.get("/api/v1/genres").status_code for _ in range(3)]

    assert statuses == [200, 200, 429]


def test_openapi_documents_idempotency_header(app: FastAPI) -> None:
    schema = TestClient(app).get("/openapi.json").json()

    artists_post = schema["paths"]["/api/v1/artists"]["post"]
    songs_post = schema["paths"]["/api/v1/songs"]["post"]
    artist_header = next(p for p in artists_post["parameters"] if p["name"] == "Idempotency-Key")
    song_header = next(p for p in songs_post["parameters"] if p["name"] == "Idempotency-Key")

    assert artist_header["required"] is True
    assert song_header["required"] is False
    assert "429" in schema["paths"]["/api/v1/songs"]["get"]["responses"]
    assert "429" not in schema["paths"]["/health"]["get"]["responses"]
    assert {"Catalog", "Health"} <= {t["name"] for t in schema["tags"]}
