"""Sliding-window store adapters.

The limiter talks to a :class:`WindowStore`; Redis backs it when reachable
and the in-memory store takes over otherwise.
"""

from gatekeeper.adapters.window_store.base import Decision, RateLimitStatus, WindowStore
from gatekeeper.adapters.window_store.local import LocalWindowStore
from gatekeeper.adapters.window_store.redis_store import SharedWindowStore

__all__ = [
    "Decision",
    "LocalWindowStore",
    "RateLimitStatus",
    "SharedWindowStore",
    "WindowStore",
]
