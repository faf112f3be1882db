"""Redis-backed sliding-window store.

Each key maps to a sorted set whose scores are event timestamps (epoch ms).
Members look like ``<timestamp>-<hex>:<weight>`` so concurrent events at the
same millisecond never collide and weights survive the round trip.

The admit path is one Lua script: prune, sum, and conditional insert run
atomically on the server, so concurrent workers cannot overshoot the limit.
"""

from __future__ import annotations

import asyncio
import logging
import math
import secrets
from typing import Any, Awaitable, Callable, TypeVar

from redis.asyncio import Redis
from redis.exceptions import RedisError

from gatekeeper.adapters.window_store.base import (
    Decision,
    WindowStore,
    allowed_decision,
    denied_decision,
    now_ms,
    retry_after_seconds,
)
from gatekeeper.core.errors import BackendUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# KEYS[1] = sorted set key
# ARGV = now_ms, prune_below_ms, max_requests, weight, member, ttl_seconds
# Returns {allowed (0/1), used_weight, retry_at_ms (0 when none)}
TRY_ADMIT_SCRIPT = """
local key = KEYS[1]
local limit = tonumber(ARGV[3])
local weight = tonumber(ARGV[4])
local member = ARGV[5]

local function weight_of(m)
  return tonumber(string.match(m, ':(%d+)$')) or 1
end

redis.call('ZREMRANGEBYSCORE', key, '-inf', '(' .. ARGV[2])
local entries = redis.call('ZRANGE', key, '0', '-1', 'WITHSCORES')

local used = 0
for i = 1, #entries, 2 do
  used = used + weight_of(entries[i])
end

if used + weight > limit then
  local retry_at = 0
  if #entries > 0 then
    retry_at = tonumber(entries[2])
    if weight <= limit then
      local freed = 0
      for i = 1, #entries, 2 do
        freed = freed + weight_of(entries[i])
        if used - freed + weight <= limit then
          retry_at = tonumber(entries[i + 1])
          break
        end
      end
    end
  end
  redis.call('EXPIRE', key, ARGV[6])
  return {0, used, retry_at}
end

redis.call('ZADD', key, ARGV[1], member)
redis.call('EXPIRE', key, ARGV[6])
return {1, used + weight, 0}
"""


def make_member(now: int, weight: int) -> str:
    return f"{now}-{secrets.token_hex(6)}:{weight}"


def member_weight(member: str) -> int:
    _, _, raw = member.rpartition(":")
    return int(raw) if raw.isdigit() else 1


class SharedWindowStore(WindowStore):
    """Sliding-window store shared by every worker through Redis.

    The client is owned by the caller (the store selector); this class never
    opens connections of its own. Every call is bounded by
    ``operation_timeout`` and any Redis or network failure surfaces as
    :class:`BackendUnavailableError` without retrying.
    """

    name = "redis"

    def __init__(
        self,
        client: Redis,
        *,
        key_prefix: str = "ratelimit:",
        operation_timeout: float = 0.25,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._client = client
        self._key_prefix = key_prefix
        self._operation_timeout = operation_timeout
        self._clock = clock
        self._try_admit = client.register_script(TRY_ADMIT_SCRIPT)

    def redis_key(self, key: str) -> str:
        return f"{self._key_prefix}{key}"

    async def _call(self, operation: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self._operation_timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as exc:
            logger.warning(
                "window_store.redis.failed",
                extra={
                    "operation": operation,
                    "error_type": type(exc).__name__,
                    "error_msg": str(exc),
                },
            )
            raise BackendUnavailableError(
                code="backend_unavailable",
                message=f"Shared window store failed during {operation}",
                details={"backend": self.name, "hint": type(exc).__name__},
            ) from exc

    async def try_admit(
        self,
        key: str,
        *,
        max_requests: int,
        window_ms: int,
        weight: int = 1,
    ) -> Decision:
        now = self._clock()
        result: list[Any] = await self._call(
            "try_admit",
            self._try_admit(
                keys=[self.redis_key(key)],
                args=[
                    now,
                    now - window_ms,
                    max_requests,
                    weight,
                    make_member(now, weight),
                    math.ceil(window_ms / 1000),
                ],
            ),
        )
        allowed, used, retry_at = (int(value) for value in result)

        if allowed:
            return allowed_decision(limit=max_requests, used=used, now=now, window_ms=window_ms)

        retry_after = retry_after_seconds(retry_at=retry_at or None, now=now, window_ms=window_ms)
        return denied_decision(limit=max_requests, retry_after=retry_after, now=now)

    async def reset(self, key: str) -> None:
        await self._call("reset", self._client.delete(self.redis_key(key)))

    async def status(self, key: str, *, window_ms: int | None = None) -> int:
        redis_key = self.redis_key(key)
        if window_ms is None:
            members = await self._call("status", self._client.zrange(redis_key, 0, -1))
        else:
            threshold = self._clock() - window_ms
            members = await self._call(
                "status", self._client.zrangebyscore(redis_key, threshold, "+inf")
            )
        return sum(member_weight(_as_text(member)) for member in members)

    async def ping(self) -> bool:
        return bool(await self._call("ping", self._client.ping()))

    async def close(self) -> None:
        # The selector owns the client and closes it.
        return None


def _as_text(member: str | bytes) -> str:
    return member.decode() if isinstance(member, bytes) else member
