from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Liveness check, outside the rate limited prefix.

    Besides ``status`` it reports entry counts of the in-memory stores,
    never their contents, and the state of each circuit breaker in use.
    """

    state = request.app.state
    return {
        "status": "ok",
        "caches": {
            "idempotency": state.idempotency_store.stats(),
            "rate_limit": state.rate_limit_store.stats(),
        },
        "circuits": state.fault_tolerance.status(),
    }
