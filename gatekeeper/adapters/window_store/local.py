"""In-memory sliding-window store.

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
- Thread-safe: a single lock serializes prune/measure/record per call.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Callable

from gatekeeper.adapters.window_store.base import (
    Decision,
    WindowStore,
    allowed_decision,
    denied_decision,
    now_ms,
    retry_after_seconds,
)

logger = logging.getLogger(__name__)


@dataclass
class _WindowState:
    # (timestamp_ms, weight), oldest first
    events: deque[tuple[int, int]] = field(default_factory=deque)
    window_ms: int = 0

    def prune(self, threshold: int) -> None:
        while self.events and self.events[0][0] < threshold:
            self.events.popleft()

    def total_weight(self, threshold: int | None = None) -> int:
        if threshold is None:
            return sum(weight for _, weight in self.events)
        return sum(weight for ts, weight in self.events if ts >= threshold)


def _find_retry_at(events: deque[tuple[int, int]], *, used: int, weight: int, limit: int) -> int | None:
    """Timestamp of the event whose expiry frees enough weight for the request.

    Falls back to the oldest event when the request can never fit.
    """
    if not events:
        return None
    if weight > limit:
        return events[0][0]
    freed = 0
    for ts, event_weight in events:
        freed += event_weight
        if used - freed + weight <= limit:
            return ts
    return events[0][0]


class LocalWindowStore(WindowStore):
    """Sliding-window store kept in process memory.

    Used as the fallback when the shared store is unreachable, and as the
    only store when no shared store is configured.

    Important:
        Limits are enforced per process. Empty keys are swept by an
        opportunistic reaper at most once per ``reap_interval_ms``.
    """

    name = "local"

    def __init__(
        self,
        *,
        reap_interval_ms: int = 60_000,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        """Initialize the in-memory store.

        Args:
            reap_interval_ms: Minimum time between sweeps of idle keys.
            clock: Time source returning epoch milliseconds.

        Raises:
            ValueError: If reap_interval_ms is invalid.
        """
        if reap_interval_ms < 1:
            raise ValueError("reap_interval_ms must be >= 1")

        self._clock = clock
        self._reap_interval_ms = reap_interval_ms
        self._lock = threading.RLock()
        self._state_by_key: dict[str, _WindowState] = {}
        self._last_reap = clock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._state_by_key)

    async def try_admit(
        self,
        key: str,
        *,
        max_requests: int,
        window_ms: int,
        weight: int = 1,
    ) -> Decision:
        return self.admit(key, max_requests=max_requests, window_ms=window_ms, weight=weight)

    def admit(self, key: str, *, max_requests: int, window_ms: int, weight: int = 1) -> Decision:
        """Synchronous core of :meth:`try_admit`."""
        with self._lock:
            now = self._clock()
            self._maybe_reap_locked(now)

            state = self._state_by_key.get(key)
            if state is None:
                state = _WindowState()
                self._state_by_key[key] = state
            state.window_ms = window_ms
            state.prune(now - window_ms)
            used = state.total_weight()

            if used + weight > max_requests:
                retry_at = _find_retry_at(state.events, used=used, weight=weight, limit=max_requests)
                if not state.events:
                    self._state_by_key.pop(key, None)
                return denied_decision(
                    limit=max_requests,
                    retry_after=retry_after_seconds(retry_at=retry_at, now=now, window_ms=window_ms),
                    now=now,
                )

            state.events.append((now, weight))
            return allowed_decision(limit=max_requests, used=used + weight, now=now, window_ms=window_ms)

    async def reset(self, key: str) -> None:
        with self._lock:
            self._state_by_key.pop(key, None)

    async def status(self, key: str, *, window_ms: int | None = None) -> int:
        with self._lock:
            state = self._state_by_key.get(key)
            if state is None:
                return 0
            if window_ms is None:
                return state.total_weight()
            return state.total_weight(self._clock() - window_ms)

    async def close(self) -> None:
        with self._lock:
            self._state_by_key.clear()

    def reap(self) -> int:
        """Drop keys whose events have all left their last-used window.

        Returns:
            Number of keys removed.
        """
        with self._lock:
            return self._reap_locked(self._clock())

    def _maybe_reap_locked(self, now: int) -> None:
        if now - self._last_reap < self._reap_interval_ms:
            return
        removed = self._reap_locked(now)
        if removed:
            logger.debug(
                "window_store.local.reaped",
                extra={"removed_keys": removed, "remaining_keys": len(self._state_by_key)},
            )

    def _reap_locked(self, now: int) -> int:
        self._last_reap = now
        idle = []
        for key, state in self._state_by_key.items():
            state.prune(now - state.window_ms)
            if not state.events:
                idle.append(key)
        for key in idle:
            del self._state_by_key[key]
        return len(idle)
