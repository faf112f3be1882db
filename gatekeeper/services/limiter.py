"""Admission facade: the public rate limiting API.

``Limiter`` validates parameters, delegates to whichever store the
:class:`StoreSelector` designates, and applies the outage policy when the
shared store fails. Availability is favoured by default (fail-open); the
policy can be flipped per deployment or per call site.
"""

from __future__ import annotations

import logging
import math
from typing import Callable

from gatekeeper.adapters.window_store.base import Decision, RateLimitStatus, WindowStore, now_ms
from gatekeeper.adapters.window_store.local import LocalWindowStore
from gatekeeper.core.config import Settings, settings
from gatekeeper.core.errors import BackendUnavailableError, ValidationAppError
from gatekeeper.core.logging import hash_identity
from gatekeeper.services.store_selector import BackendState, StoreSelector

logger = logging.getLogger(__name__)


def _require_positive_int(name: str, value: object) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValidationAppError(
            code="invalid_parameters",
            message=f"{name} must be a positive integer",
            details={"field": name, "actual_value": value},
        )


def validate_check_parameters(key: object, max_requests: object, window_ms: object, weight: object) -> None:
    """Reject malformed arguments before any store is touched.

    Raises:
        ValidationAppError: If the key is empty or a numeric argument is not
            a positive integer.
    """
    if not isinstance(key, str) or not key:
        raise ValidationAppError(
            code="invalid_parameters",
            message="key must be a non-empty string",
            details={"field": "key"},
        )
    _require_positive_int("max_requests", max_requests)
    _require_positive_int("window_ms", window_ms)
    _require_positive_int("weight", weight)


class Limiter:
    """Sliding-window rate limiter with shared-store fallback.

    Construct once per process (see :func:`create_limiter`), call
    :meth:`start` before serving traffic and :meth:`close` on shutdown.
    """

    def __init__(
        self,
        selector: StoreSelector,
        *,
        fail_open: bool = True,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._selector = selector
        self._fail_open = fail_open
        self._clock = clock

    @property
    def selector(self) -> StoreSelector:
        return self._selector

    @property
    def state(self) -> BackendState:
        return self._selector.state

    async def start(self) -> BackendState:
        return await self._selector.start()

    async def close(self) -> None:
        await self._selector.close()

    async def check_rate_limit(
        self,
        key: str,
        max_requests: int,
        window_ms: int,
        weight: int = 1,
        *,
        fail_open: bool | None = None,
    ) -> Decision:
        """Admit one weighted operation for ``key`` if it fits in the window.

        Args:
            key: Rate limit key, e.g. ``"admin:<uid>"`` or ``"ip:<addr>"``.
            max_requests: Maximum total weight per window.
            window_ms: Window length in milliseconds.
            weight: Cost of this operation (default 1).
            fail_open: Override the configured outage policy for this call.

        Returns:
            Decision; denials carry ``retry_after_seconds``.

        Raises:
            ValidationAppError: On malformed parameters.
            NotInitializedError: Before start() or after close().
        """
        validate_check_parameters(key, max_requests, window_ms, weight)
        store = self._selector.active_store()

        try:
            return await store.try_admit(
                key, max_requests=max_requests, window_ms=window_ms, weight=weight
            )
        except BackendUnavailableError as exc:
            self._selector.mark_degraded(exc)
            policy_open = self._fail_open if fail_open is None else fail_open
            logger.warning(
                "limiter.degraded",
                extra={
                    "key_hash": hash_identity(key),
                    "backend": store.name,
                    "fail_open": policy_open,
                    "error_code": exc.code,
                },
            )
            return self._outage_decision(max_requests, window_ms, fail_open=policy_open)

    async def reset_rate_limit(self, key: str) -> None:
        """Clear all recorded events for ``key`` (administrative)."""
        if not isinstance(key, str) or not key:
            raise ValidationAppError(code="invalid_parameters", message="key must be a non-empty string")

        store = self._selector.active_store()
        try:
            await store.reset(key)
        except BackendUnavailableError as exc:
            self._selector.mark_degraded(exc)
            await self._selector.active_store().reset(key)

        logger.info("limiter.reset", extra={"key_hash": hash_identity(key)})

    async def get_status(self, key: str, window_ms: int | None = None) -> RateLimitStatus:
        """Report the weight currently recorded for ``key``.

        With ``window_ms`` only events inside the trailing window are counted.
        """
        if not isinstance(key, str) or not key:
            raise ValidationAppError(code="invalid_parameters", message="key must be a non-empty string")
        if window_ms is not None:
            _require_positive_int("window_ms", window_ms)

        store: WindowStore = self._selector.active_store()
        try:
            usage = await store.status(key, window_ms=window_ms)
        except BackendUnavailableError as exc:
            self._selector.mark_degraded(exc)
            usage = await self._selector.active_store().status(key, window_ms=window_ms)

        return RateLimitStatus(current_usage=usage, timestamp=self._clock())

    def _outage_decision(self, max_requests: int, window_ms: int, *, fail_open: bool) -> Decision:
        now = self._clock()
        if fail_open:
            return Decision(
                allowed=True,
                limit=max_requests,
                remaining=max_requests,
                reset_time=now + window_ms,
            )
        retry_after = math.ceil(window_ms / 1000)
        return Decision(
            allowed=False,
            limit=max_requests,
            remaining=0,
            reset_time=now + retry_after * 1000,
            retry_after_seconds=retry_after,
        )


def create_limiter(cfg: Settings | None = None) -> Limiter:
    """Factory building a limiter from settings.

    Reads configuration from gatekeeper.core.config.settings unless ``cfg``
    is provided.
    """
    cfg = cfg or settings
    local = LocalWindowStore(reap_interval_ms=cfg.limiter.local_reap_interval_ms)
    selector = StoreSelector(cfg.redis, local_store=local)
    return Limiter(selector, fail_open=cfg.limiter.fail_open)
