from __future__ import annotations

from fastapi import APIRouter, Request

router = APIRouter(tags=["Health"])


@router.get("/health")
def health_check(request: Request) -> dict:
    """Health check endpoint.

    Reports liveness plus which window store currently serves admission
    checks. A ``local_fallback`` limiter is still healthy: it is degraded,
    not down.

    Returns:
        dict: ``{"status": "ok", "limiter": <backend state>}``.
    """

    limiter = getattr(request.app.state, "limiter", None)
    state = limiter.state.value if limiter is not None else "uninitialized"
    return {"status": "ok", "limiter": state}
