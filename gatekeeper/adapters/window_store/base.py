"""Window store interfaces.

The limiter depends on this abstraction (not the concrete implementation)
so the shared Redis store and the in-process fallback are interchangeable.
"""

from __future__ import annotations

import math
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


@dataclass(frozen=True)
class Decision:
    """Result of an admission check.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max weight per window used for this check.
        remaining: Remaining weight in the window (0 when denied).
        reset_time: Epoch milliseconds when the caller may expect budget back.
        retry_after_seconds: Suggested wait in seconds; set only when denied.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_time: int
    retry_after_seconds: int | None = None


@dataclass(frozen=True)
class RateLimitStatus:
    """Observed usage for a key at ``timestamp`` (epoch ms)."""

    current_usage: int
    timestamp: int


def retry_after_seconds(*, retry_at: int | None, now: int, window_ms: int) -> int:
    """Seconds until the event recorded at ``retry_at`` leaves the window.

    Clamped to ``[0, ceil(window_ms / 1000)]``. Without an event the request
    cannot fit on an empty window, so a full window is suggested rather than
    an immediate retry.
    """
    if retry_at is None:
        return math.ceil(window_ms / 1000)
    seconds = math.ceil((window_ms - (now - retry_at)) / 1000)
    return max(0, min(seconds, math.ceil(window_ms / 1000)))


def allowed_decision(*, limit: int, used: int, now: int, window_ms: int) -> Decision:
    return Decision(
        allowed=True,
        limit=limit,
        remaining=max(0, limit - used),
        reset_time=now + window_ms,
    )


def denied_decision(*, limit: int, retry_after: int, now: int) -> Decision:
    return Decision(
        allowed=False,
        limit=limit,
        remaining=0,
        reset_time=now + retry_after * 1000,
        retry_after_seconds=retry_after,
    )


class WindowStore(ABC):
    """Sliding-window event store.

    Implementations must prune, measure and conditionally record in one
    logical step per ``try_admit`` call. Parameters are validated by the
    caller; stores assume positive integers.
    """

    name: str = "abstract"

    @abstractmethod
    async def try_admit(
        self,
        key: str,
        *,
        max_requests: int,
        window_ms: int,
        weight: int = 1,
    ) -> Decision:
        """Admit and record an event for ``key`` if it fits in the window.

        Args:
            key: Rate limit key (e.g., ``"admin:<uid>"``).
            max_requests: Maximum total weight per window.
            window_ms: Window length in milliseconds.
            weight: Cost of this event.

        Returns:
            Decision describing whether the event was recorded.

        Raises:
            BackendUnavailableError: If the backing store cannot be reached.
        """
        raise NotImplementedError

    @abstractmethod
    async def reset(self, key: str) -> None:
        """Clear every recorded event for ``key``."""
        raise NotImplementedError

    @abstractmethod
    async def status(self, key: str, *, window_ms: int | None = None) -> int:
        """Return the recorded weight for ``key`` without mutating it.

        With ``window_ms`` only events inside the trailing window count.
        """
        raise NotImplementedError

    async def close(self) -> None:
        """Release resources held by the store."""
        return None
