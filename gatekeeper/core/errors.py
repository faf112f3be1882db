"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    field: str
    actual_value: Any
    http_status: int
    retry_after: int
    limit: int
    remaining: int
    reset_time: int
    backend: str
    state: str
    scope: str
    key: str
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class AuthenticationAppError(AppError):
    """Raised when authentication/authorization fails."""


class BackendUnavailableError(AppError):
    """Raised when the shared window store cannot be reached or times out."""


class NotInitializedError(AppError):
    """Raised when the limiter is used before start() or after close()."""


class RateLimitExceededError(AppError):
    """Raised by the HTTP layer when a request is over its budget.

    ``retry_after`` is mirrored in the response body and ``Retry-After``
    header; ``headers`` carries any extra X-RateLimit-* values.

    Codes:
        rate_limit_exceeded: the key submitted for admission is exhausted.
        caller_rate_limited: the HTTP caller itself is over its route budget.
    """

    def __init__(
        self,
        *,
        retry_after: int,
        headers: dict[str, str] | None = None,
        details: ErrorDetails | None = None,
        code: str = "rate_limit_exceeded",
        message: str = "Too many requests. Try again later.",
    ) -> None:
        super().__init__(
            code=code,
            message=message,
            details=details,
        )
        self.retry_after = retry_after
        self.headers = headers or {}
