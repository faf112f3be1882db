"""Pydantic schemas for admission checks and rate limit administration."""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from gatekeeper.adapters.window_store.base import Decision, RateLimitStatus


class AdmissionCheckRequest(BaseModel):
    """Weighted admission request for an arbitrary key."""

    key: str = Field(..., min_length=1, description="Rate limit key, e.g. 'admin:<uid>' or 'ip:<addr>'.")
    max_requests: int = Field(..., gt=0, description="Maximum total weight per window.")
    window_ms: int = Field(..., gt=0, description="Sliding window length in milliseconds.")
    weight: int = Field(1, gt=0, description="Cost of this operation.")


class DecisionResponse(BaseModel):
    """Admission decision as returned to HTTP callers."""

    model_config = ConfigDict(populate_by_name=True)

    allowed: bool
    limit: int
    remaining: int = Field(..., ge=0)
    reset_time: int = Field(..., alias="resetTime", description="Epoch milliseconds.")
    retry_after: int | None = Field(
        default=None,
        alias="retryAfter",
        description="Seconds to wait before retrying; present only when denied.",
    )

    @classmethod
    def from_decision(cls, decision: Decision) -> "DecisionResponse":
        return cls(
            allowed=decision.allowed,
            limit=decision.limit,
            remaining=decision.remaining,
            reset_time=decision.reset_time,
            retry_after=decision.retry_after_seconds,
        )


class RateLimitStatusResponse(BaseModel):
    """Current usage for a key."""

    model_config = ConfigDict(populate_by_name=True)

    key: str
    current_usage: int = Field(..., alias="currentUsage", ge=0)
    timestamp: int = Field(..., description="Epoch milliseconds when usage was read.")
    backend: str = Field(..., description="Store state that served the read.")

    @classmethod
    def from_status(cls, key: str, status: RateLimitStatus, backend: str) -> "RateLimitStatusResponse":
        return cls(key=key, current_usage=status.current_usage, timestamp=status.timestamp, backend=backend)
