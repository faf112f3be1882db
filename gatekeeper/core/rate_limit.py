"""Rate limiting dependency for FastAPI routes.

This module wires the limiter into the HTTP layer.

Design goals:
- Minimal coupling: routes depend on a dependency built from a policy.
- One limiter per app: read from ``request.app.state.limiter``.
- Limits are per call site: each policy carries its own budget and scope.

Keys:
- ``admin`` scope: per API key (hashed), falling back to client IP.
- ``ip`` scope: per client IP.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable

from fastapi import Request

from gatekeeper.adapters.window_store.base import Decision
from gatekeeper.core.config import settings
from gatekeeper.core.errors import ErrorDetails, NotInitializedError, RateLimitExceededError
from gatekeeper.core.logging import hash_identity
from gatekeeper.services.limiter import Limiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitPolicy:
    """Budget applied to one group of routes."""

    scope: str
    max_requests: int
    window_ms: int
    weight: int = 1


def global_policy() -> RateLimitPolicy:
    return RateLimitPolicy(
        scope="ip",
        max_requests=settings.limiter.global_max_requests,
        window_ms=settings.limiter.global_window_ms,
    )


def admin_policy() -> RateLimitPolicy:
    return RateLimitPolicy(
        scope="admin",
        max_requests=settings.limiter.admin_max_requests,
        window_ms=settings.limiter.admin_window_ms,
    )


def get_limiter(request: Request) -> Limiter:
    """Return the limiter owned by the running application.

    Raises:
        NotInitializedError: If the application lifespan has not set one up.
    """
    limiter = getattr(request.app.state, "limiter", None)
    if limiter is None:
        raise NotInitializedError(
            code="limiter_not_initialized",
            message="Rate limiter is not initialized",
        )
    return limiter


def build_rate_limit_key(request: Request, scope: str) -> str:
    """Build the limiter key for the current request.

    Args:
        request: FastAPI request.
        scope: Policy scope (``"admin"`` or ``"ip"``).

    Returns:
        str: Namespaced limiter key, e.g. ``"admin:<hash>"`` or ``"ip:10.0.0.1"``.
            Without an API key the admin scope falls back to the client IP.
    """
    if scope == "admin":
        api_key = request.headers.get("X-API-Key")
        if api_key:
            return f"admin:{hash_identity(api_key)}"

    client_host = request.client.host if request.client else "unknown"
    return f"{scope}:{client_host}"


def rate_limit_headers(decision: Decision) -> dict[str, str]:
    headers = {"Retry-After": str(decision.retry_after_seconds or 0)}
    if settings.limiter.include_headers:
        headers["X-RateLimit-Limit"] = str(decision.limit)
        headers["X-RateLimit-Remaining"] = str(decision.remaining)
        headers["X-RateLimit-Reset"] = str(decision.reset_time // 1000)
    return headers


def raise_for_decision(
    decision: Decision,
    *,
    key: str,
    endpoint: str,
    scope: str = "key",
    weight: int = 1,
    code: str = "rate_limit_exceeded",
    message: str = "Too many requests. Try again later.",
) -> None:
    """Raise RateLimitExceededError when ``decision`` is a denial.

    Denials are logged as ``rate_limit.exceeded`` with a hashed identity so
    abuse can be tracked downstream. ``scope`` lands in the error details so
    callers can tell a denied key from their own throttling.
    """
    if decision.allowed:
        return

    retry_after = decision.retry_after_seconds or 0
    logger.warning(
        "rate_limit.exceeded",
        extra={
            "key_hash": hash_identity(key),
            "endpoint": endpoint,
            "scope": scope,
            "limit": decision.limit,
            "retry_after_s": retry_after,
        },
    )
    details: ErrorDetails = {
        "scope": scope,
        "limit": decision.limit,
        "reset_time": decision.reset_time,
    }
    if weight > decision.limit:
        details["hint"] = "weight exceeds max_requests; this request can never be admitted"
    raise RateLimitExceededError(
        code=code,
        message=message,
        retry_after=retry_after,
        headers=rate_limit_headers(decision),
        details=details,
    )


def rate_limit(policy_factory: Callable[[], RateLimitPolicy]) -> Callable[[Request], Awaitable[None]]:
    """Build a FastAPI dependency enforcing the policy returned by ``policy_factory``.

    The factory is evaluated per request so settings overrides apply without
    rebuilding routes.

    Usage:
        @router.get("/x", dependencies=[Depends(rate_limit(admin_policy))])
    """

    async def enforce_rate_limit(request: Request) -> None:
        if not settings.limiter.enabled:
            return

        policy = policy_factory()
        limiter = get_limiter(request)
        key = build_rate_limit_key(request, policy.scope)

        decision = await limiter.check_rate_limit(
            key, policy.max_requests, policy.window_ms, policy.weight
        )
        if decision.allowed:
            logger.debug(
                "rate_limit.allowed",
                extra={
                    "key_hash": hash_identity(key),
                    "scope": policy.scope,
                    "limit": decision.limit,
                    "remaining": decision.remaining,
                },
            )
            return

        raise_for_decision(
            decision,
            key=key,
            endpoint=request.url.path,
            scope=policy.scope,
            weight=policy.weight,
            code="caller_rate_limited",
            message="Too many requests from this caller. Try again later.",
        )

    return enforce_rate_limit
