"""OpenAPI metadata and customization utilities.

Enriches the generated OpenAPI schema with what the interceptors do, since
they run outside the routes and FastAPI cannot see them:
- Tags metadata
- The idempotency token header on routes whose policy reads it
- The 429 response on rate limited paths

This keeps documentation concerns decoupled from the app factory.
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI

from music_catalog.core.pipeline import IdempotencyMode, RoutePolicyTable

_TAGS = [
    {
        "name": "Catalog",
        "description": "Artists, genres and songs.",
    },
    {
        "name": "Health",
        "description": "Liveness checks.",
    },
]

_RATE_LIMITED_RESPONSE = {
    "description": "Rate limit exceeded; retry after the number of seconds in Retry-After.",
}


def apply_openapi_customizations(
    app: FastAPI,
    *,
    policies: RoutePolicyTable,
    idempotency_header: str = "Idempotency-Key",
    rate_limit_prefix: str | None = None,
) -> None:
    """Patch FastAPI's OpenAPI generation to document the interceptors.

    - Adds tags metadata if not present
    - Declares the idempotency header (required or optional per route policy)
    - Declares the 429 response for operations under ``rate_limit_prefix``
    """

    original_openapi = app.openapi

    def custom_openapi() -> Dict[str, Any]:
        schema = original_openapi()

        tags = schema.setdefault("tags", [])
        existing_tag_names = {t.get("name") for t in tags}
        for tag in _TAGS:
            if tag["name"] not in existing_tag_names:
                tags.append(tag)

        paths = schema.get("paths", {})
        for policy in policies:
            if policy.idempotency is IdempotencyMode.NONE:
                continue
            operation = paths.get(policy.path, {}).get(policy.method.lower())
            if not isinstance(operation, dict):
                continue
            parameters = operation.setdefault("parameters", [])
            if any(p.get("name") == idempotency_header for p in parameters):
                continue
            parameters.append(
                {
                    "name": idempotency_header,
                    "in": "header",
                    "required": policy.idempotency is IdempotencyMode.REQUIRED,
                    "schema": {"type": "string"},
                    "description": (
                        "Client-chosen token; retries with the same token replay "
                        "the first successful response."
                    ),
                }
            )

        if rate_limit_prefix:
            for path, methods in paths.items():
                if not path.startswith(rate_limit_prefix):
                    continue
                for method_obj in methods.values():
                    if isinstance(method_obj, dict):
                        method_obj.setdefault("responses", {}).setdefault(
                            "429", _RATE_LIMITED_RESPONSE
                        )

        return schema

    app.openapi = custom_openapi  # type: ignore[assignment]
