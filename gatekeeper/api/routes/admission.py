from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from gatekeeper.core.rate_limit import get_limiter, global_policy, raise_for_decision, rate_limit
from gatekeeper.schemas.rate_limit import AdmissionCheckRequest, DecisionResponse

router = APIRouter(tags=["Admission"])


@router.post(
    "/admission/check",
    response_model=DecisionResponse,
    dependencies=[Depends(rate_limit(global_policy))],
)
async def check_admission(payload: AdmissionCheckRequest, request: Request) -> DecisionResponse:
    """Consume budget for ``payload.key`` on behalf of another service.

    Returns the decision with 200 when admitted; denials are answered with
    429, ``retryAfter`` in the body and a ``Retry-After`` header. Those carry
    ``code="rate_limit_exceeded"`` and ``details.scope="key"``; throttling of
    the caller itself uses ``caller_rate_limited`` instead.
    """
    limiter = get_limiter(request)
    decision = await limiter.check_rate_limit(
        payload.key, payload.max_requests, payload.window_ms, payload.weight
    )
    raise_for_decision(decision, key=payload.key, endpoint=request.url.path, weight=payload.weight)
    return DecisionResponse.from_decision(decision)
