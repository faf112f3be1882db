from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response, status

from gatekeeper.core.auth import verify_api_key
from gatekeeper.core.rate_limit import admin_policy, get_limiter, rate_limit
from gatekeeper.schemas.rate_limit import RateLimitStatusResponse

router = APIRouter(
    prefix="/admin",
    tags=["Admin"],
    dependencies=[Depends(verify_api_key), Depends(rate_limit(admin_policy))],
)


@router.get("/rate-limits/{key:path}", response_model=RateLimitStatusResponse)
async def get_rate_limit_status(
    key: str,
    request: Request,
    window_ms: int | None = Query(
        default=None,
        gt=0,
        description="Count only events inside this trailing window.",
    ),
) -> RateLimitStatusResponse:
    """Report the usage currently recorded for ``key``."""
    limiter = get_limiter(request)
    usage = await limiter.get_status(key, window_ms=window_ms)
    return RateLimitStatusResponse.from_status(key, usage, backend=limiter.state.value)


@router.delete("/rate-limits/{key:path}", status_code=status.HTTP_204_NO_CONTENT)
async def reset_rate_limit(key: str, request: Request) -> Response:
    """Clear abusive or mistaken throttling for ``key``."""
    await get_limiter(request).reset_rate_limit(key)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
