"""Backend selection and lifecycle for the window stores.

State machine::

    UNINITIALIZED -> CONNECTING -> SHARED_ACTIVE
                                -> LOCAL_FALLBACK
    SHARED_ACTIVE -> LOCAL_FALLBACK     (runtime failure)
    LOCAL_FALLBACK -> SHARED_ACTIVE     (reconnect probe, when enabled)
    any -> CLOSED                       (shutdown)

The selector owns the single long-lived Redis client; stores never open
connections themselves.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff, NoBackoff
from redis.exceptions import RedisError

from gatekeeper.adapters.window_store.base import WindowStore, now_ms
from gatekeeper.adapters.window_store.local import LocalWindowStore
from gatekeeper.adapters.window_store.redis_store import SharedWindowStore
from gatekeeper.core.config import RedisSettings
from gatekeeper.core.errors import BackendUnavailableError, NotInitializedError
from gatekeeper.core.logging import redact_url

logger = logging.getLogger(__name__)


class BackendState(str, Enum):
    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    SHARED_ACTIVE = "shared_active"
    LOCAL_FALLBACK = "local_fallback"
    CLOSED = "closed"


ClientFactory = Callable[[RedisSettings], Redis]


def build_redis_client(cfg: RedisSettings) -> Redis:
    """Create the shared Redis client from settings.

    Per-call retries are disabled: a failed operation must surface at once so
    the limiter can apply its outage policy.
    """
    if not cfg.url:
        raise ValueError("Redis URL is not configured")
    return Redis.from_url(
        cfg.url,
        password=cfg.password,
        db=cfg.db,
        decode_responses=True,
        socket_connect_timeout=cfg.connect_timeout_seconds,
        socket_timeout=cfg.operation_timeout_seconds,
        retry=Retry(NoBackoff(), 0),
        retry_on_timeout=False,
    )


class StoreSelector:
    """Decides which :class:`WindowStore` serves admission checks."""

    def __init__(
        self,
        redis_settings: RedisSettings,
        *,
        local_store: LocalWindowStore | None = None,
        client_factory: ClientFactory = build_redis_client,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._settings = redis_settings
        self._local = local_store or LocalWindowStore(clock=clock)
        self._client_factory = client_factory
        self._clock = clock
        self._client: Redis | None = None
        self._shared: SharedWindowStore | None = None
        self._state = BackendState.UNINITIALIZED
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> BackendState:
        return self._state

    @property
    def local_store(self) -> LocalWindowStore:
        return self._local

    @property
    def shared_store(self) -> SharedWindowStore | None:
        return self._shared

    def active_store(self) -> WindowStore:
        """Return the store that should serve the next call.

        Raises:
            NotInitializedError: Before start() completes or after close().
        """
        if self._state is BackendState.SHARED_ACTIVE and self._shared is not None:
            return self._shared
        if self._state is BackendState.LOCAL_FALLBACK:
            return self._local
        raise NotInitializedError(
            code="limiter_not_initialized",
            message="Rate limiter is not initialized",
            details={"state": self._state.value},
        )

    async def start(self) -> BackendState:
        """Connect to the shared store, or settle on the in-memory store.

        Idempotent while running; a closed selector can be started again.
        """
        if self._state in (BackendState.SHARED_ACTIVE, BackendState.LOCAL_FALLBACK):
            return self._state

        self._state = BackendState.CONNECTING

        if not self._settings.url:
            self._state = BackendState.LOCAL_FALLBACK
            logger.info("selector.local_only", extra={"reason": "redis_url_not_configured"})
            return self._state

        if await self._connect(self._settings.connect_attempts):
            self._state = BackendState.SHARED_ACTIVE
        else:
            self._state = BackendState.LOCAL_FALLBACK
            logger.warning(
                "selector.degraded",
                extra={"reason": "connect_failed", "backend": LocalWindowStore.name},
            )

        if self._settings.reconnect_interval_seconds > 0:
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

        return self._state

    def mark_degraded(self, exc: BackendUnavailableError) -> None:
        """Route subsequent calls to the in-memory store after a runtime failure."""
        if self._state is not BackendState.SHARED_ACTIVE:
            return
        self._state = BackendState.LOCAL_FALLBACK
        logger.warning(
            "selector.degraded",
            extra={
                "reason": "runtime_failure",
                "error_code": exc.code,
                "error_message": exc.message,
                "backend": LocalWindowStore.name,
            },
        )

    async def try_recover(self) -> bool:
        """Probe the shared store and switch back to it when it answers."""
        if self._state is not BackendState.LOCAL_FALLBACK or not self._settings.url:
            return False

        if self._shared is None:
            if not await self._connect(1):
                return False
        else:
            try:
                await self._shared.ping()
            except BackendUnavailableError:
                return False

        self._state = BackendState.SHARED_ACTIVE
        logger.info("selector.recovered", extra={"backend": SharedWindowStore.name})
        return True

    async def close(self) -> None:
        """Release the shared connection and clear the in-memory store."""
        if self._reconnect_task is not None:
            self._reconnect_task.cancel()
            try:
                await self._reconnect_task
            except asyncio.CancelledError:
                pass
            self._reconnect_task = None

        if self._client is not None:
            await self._close_client(self._client)
        self._client = None
        self._shared = None

        await self._local.close()
        self._state = BackendState.CLOSED
        logger.info("selector.closed")

    async def _connect(self, attempts: int) -> bool:
        cfg = self._settings
        try:
            client = self._client_factory(cfg)
        except (RedisError, ValueError) as exc:
            # malformed URL or connection options
            logger.warning(
                "selector.connect_failed",
                extra={
                    "attempt": 0,
                    "attempts": attempts,
                    "error_type": type(exc).__name__,
                    "error_msg": redact_url(str(exc)),
                },
            )
            return False

        backoff = ExponentialBackoff(cap=cfg.backoff_cap_seconds, base=cfg.backoff_base_seconds)
        adopted = False
        try:
            for attempt in range(1, attempts + 1):
                try:
                    await asyncio.wait_for(client.ping(), timeout=cfg.connect_timeout_seconds)
                except (RedisError, OSError, asyncio.TimeoutError) as exc:
                    logger.warning(
                        "selector.connect_failed",
                        extra={
                            "attempt": attempt,
                            "attempts": attempts,
                            "error_type": type(exc).__name__,
                            "error_msg": str(exc),
                        },
                    )
                    if attempt < attempts:
                        await asyncio.sleep(backoff.compute(attempt))
                    continue

                self._client = client
                self._shared = SharedWindowStore(
                    client,
                    key_prefix=cfg.key_prefix,
                    operation_timeout=cfg.operation_timeout_seconds,
                    clock=self._clock,
                )
                adopted = True
                logger.info(
                    "selector.connected",
                    extra={"redis_url": redact_url(cfg.url or ""), "attempt": attempt},
                )
                return True
            return False
        finally:
            # also runs on cancellation from close()
            if not adopted:
                await self._close_client(client)

    async def _reconnect_loop(self) -> None:
        interval = self._settings.reconnect_interval_seconds
        while True:
            await asyncio.sleep(interval)
            if self._state is not BackendState.LOCAL_FALLBACK:
                continue
            try:
                await self.try_recover()
            except Exception:
                logger.exception("selector.reconnect_failed")

    @staticmethod
    async def _close_client(client: Redis) -> None:
        try:
            await client.aclose()
        except (RedisError, OSError) as exc:
            logger.debug("selector.close_failed", extra={"error_type": type(exc).__name__})
