"""Unit tests for the in-memory sliding-window store."""

import math
import threading

import pytest

from gatekeeper.adapters.window_store.local import LocalWindowStore


@pytest.fixture
def store(clock) -> LocalWindowStore:
    return LocalWindowStore(clock=clock)


def admit(store: LocalWindowStore, key: str = "k", *, limit: int = 3, window_ms: int = 60_000, weight: int = 1):
    return store.admit(key, max_requests=limit, window_ms=window_ms, weight=weight)


def test_ten_requests_then_denied_with_retry_close_to_window(store, clock) -> None:
    remaining = []
    for _ in range(10):
        decision = admit(store, "admin:abc", limit=10)
        assert decision.allowed is True
        assert decision.retry_after_seconds is None
        remaining.append(decision.remaining)
        clock.advance(100)

    assert remaining == [9, 8, 7, 6, 5, 4, 3, 2, 1, 0]

    blocked = admit(store, "admin:abc", limit=10)
    assert blocked.allowed is False
    assert blocked.remaining == 0
    # first event was 1s ago, so it ages out in ~59s
    assert blocked.retry_after_seconds == 59
    assert blocked.reset_time == clock() + 59_000


def test_window_bound_holds_over_any_span(store, clock) -> None:
    limit, window_ms = 5, 1_000
    admitted_at = []
    for _ in range(200):
        if admit(store, limit=limit, window_ms=window_ms).allowed:
            admitted_at.append(clock())
        clock.advance(37)

    for start in admitted_at:
        in_span = [t for t in admitted_at if start <= t < start + window_ms]
        assert len(in_span) <= limit


def test_event_expires_after_window(store, clock) -> None:
    assert admit(store, limit=1, window_ms=1_000).allowed is True
    assert admit(store, limit=1, window_ms=1_000).allowed is False

    clock.advance(1_001)
    assert admit(store, limit=1, window_ms=1_000).allowed is True


def test_weight_consumes_budget(store) -> None:
    first = admit(store, limit=10, weight=4)
    assert first.allowed is True
    assert first.remaining == 6

    second = admit(store, limit=10, weight=6)
    assert second.allowed is True
    assert second.remaining == 0

    assert admit(store, limit=10, weight=1).allowed is False


def test_weight_above_limit_is_always_denied(store) -> None:
    decision = admit(store, limit=3, weight=4)
    assert decision.allowed is False
    assert decision.remaining == 0
    assert decision.retry_after_seconds == 60
    assert len(store) == 0


def test_denied_request_is_not_recorded(store, clock) -> None:
    admit(store, limit=2, weight=2)
    assert admit(store, limit=2).allowed is False

    clock.advance(60_001)
    assert admit(store, limit=2, weight=2).allowed is True


def test_retry_after_waits_for_enough_weight_to_expire(store, clock) -> None:
    admit(store, limit=3, window_ms=10_000)  # t=0
    clock.advance(4_000)
    admit(store, limit=3, window_ms=10_000)  # t=4s
    clock.advance(1_000)
    admit(store, limit=3, window_ms=10_000)  # t=5s

    # needs two events to expire: the second one leaves at t=14s
    blocked = admit(store, limit=3, window_ms=10_000, weight=2)
    assert blocked.allowed is False
    assert blocked.retry_after_seconds == 9


@pytest.mark.parametrize("window_ms", [1, 999, 1_000, 1_500, 60_000])
def test_retry_after_stays_within_bounds(store, clock, window_ms: int) -> None:
    admit(store, limit=1, window_ms=window_ms)
    clock.advance(window_ms // 2)

    blocked = admit(store, limit=1, window_ms=window_ms)
    assert blocked.allowed is False
    assert 0 <= blocked.retry_after_seconds <= math.ceil(window_ms / 1000)


def test_isolated_by_key(store) -> None:
    assert admit(store, "k1", limit=1).allowed is True
    assert admit(store, "k1", limit=1).allowed is False
    assert admit(store, "k2", limit=1).allowed is True


@pytest.mark.asyncio
async def test_reset_is_idempotent(store) -> None:
    await store.reset("missing")

    admit(store, limit=1)
    await store.reset("k")
    await store.reset("k")

    assert await store.status("k") == 0
    assert admit(store, limit=1).allowed is True


@pytest.mark.asyncio
async def test_status_does_not_mutate(store, clock) -> None:
    admit(store, limit=5, weight=2)
    clock.advance(30_000)
    admit(store, limit=5, weight=1)

    assert await store.status("k") == 3
    assert await store.status("k", window_ms=10_000) == 1
    assert await store.status("k") == 3


@pytest.mark.asyncio
async def test_try_admit_matches_sync_path(store) -> None:
    decision = await store.try_admit("k", max_requests=2, window_ms=1_000)
    assert decision.allowed is True
    assert decision.remaining == 1


def test_reaper_drops_idle_keys(clock) -> None:
    store = LocalWindowStore(reap_interval_ms=5_000, clock=clock)
    admit(store, "old", window_ms=1_000)
    admit(store, "fresh", window_ms=60_000)

    clock.advance(2_000)
    assert store.reap() == 1
    assert len(store) == 1


def test_reaper_runs_opportunistically_on_admit(clock) -> None:
    store = LocalWindowStore(reap_interval_ms=5_000, clock=clock)
    for index in range(20):
        admit(store, f"ip:{index}", window_ms=1_000)
    assert len(store) == 20

    clock.advance(5_000)
    admit(store, "ip:new", window_ms=1_000)
    assert len(store) == 1


@pytest.mark.asyncio
async def test_close_clears_state(store) -> None:
    admit(store)
    await store.close()
    assert len(store) == 0


def test_concurrent_threads_never_exceed_limit() -> None:
    store = LocalWindowStore()
    allowed = []
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        for _ in range(50):
            if store.admit("shared", max_requests=100, window_ms=60_000).allowed:
                allowed.append(1)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(allowed) == 100


def test_invalid_constructor_args() -> None:
    with pytest.raises(ValueError):
        LocalWindowStore(reap_interval_ms=0)
