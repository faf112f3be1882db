"""Tests for the Redis-backed sliding-window store (fakeredis with Lua)."""

import asyncio
import math
from unittest.mock import AsyncMock, MagicMock

import fakeredis
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from gatekeeper.adapters.window_store.redis_store import SharedWindowStore, make_member, member_weight
from gatekeeper.core.errors import BackendUnavailableError


@pytest.fixture
def server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def client(server):
    return fakeredis.FakeAsyncRedis(server=server, decode_responses=True)


@pytest.fixture
def store(client, clock) -> SharedWindowStore:
    return SharedWindowStore(client, clock=clock, operation_timeout=1.0)


class TestTryAdmit:
    @pytest.mark.asyncio
    async def test_ten_requests_then_denied(self, store, clock) -> None:
        remaining = []
        for _ in range(10):
            decision = await store.try_admit("admin:abc", max_requests=10, window_ms=60_000)
            assert decision.allowed is True
            remaining.append(decision.remaining)

        assert remaining == [9, 8, 7, 6, 5, 4, 3, 2, 1, 0]

        clock.advance(500)
        blocked = await store.try_admit("admin:abc", max_requests=10, window_ms=60_000)
        assert blocked.allowed is False
        assert blocked.remaining == 0
        assert blocked.retry_after_seconds == 60

    @pytest.mark.asyncio
    async def test_events_sharing_a_timestamp_are_all_recorded(self, store, client) -> None:
        for _ in range(3):
            await store.try_admit("k", max_requests=5, window_ms=1_000)

        assert await client.zcard("ratelimit:k") == 3

    @pytest.mark.asyncio
    async def test_event_expires_after_window(self, store, clock) -> None:
        assert (await store.try_admit("k", max_requests=1, window_ms=1_000)).allowed is True
        assert (await store.try_admit("k", max_requests=1, window_ms=1_000)).allowed is False

        clock.advance(1_001)
        assert (await store.try_admit("k", max_requests=1, window_ms=1_000)).allowed is True

    @pytest.mark.asyncio
    async def test_weights_are_summed(self, store) -> None:
        first = await store.try_admit("k", max_requests=10, window_ms=60_000, weight=7)
        assert first.allowed is True
        assert first.remaining == 3

        blocked = await store.try_admit("k", max_requests=10, window_ms=60_000, weight=4)
        assert blocked.allowed is False

        last = await store.try_admit("k", max_requests=10, window_ms=60_000, weight=3)
        assert last.allowed is True
        assert last.remaining == 0

    @pytest.mark.asyncio
    async def test_weight_above_limit_is_denied_on_empty_key(self, store, client) -> None:
        decision = await store.try_admit("k", max_requests=2, window_ms=1_000, weight=3)
        assert decision.allowed is False
        assert decision.retry_after_seconds == 1
        assert await client.exists("ratelimit:k") == 0

    @pytest.mark.asyncio
    async def test_retry_after_within_bounds(self, store, clock) -> None:
        await store.try_admit("k", max_requests=1, window_ms=2_500)
        clock.advance(700)

        blocked = await store.try_admit("k", max_requests=1, window_ms=2_500)
        assert 0 <= blocked.retry_after_seconds <= math.ceil(2_500 / 1000)
        assert blocked.retry_after_seconds == 2

    @pytest.mark.asyncio
    async def test_key_expiry_is_refreshed(self, store, client) -> None:
        await store.try_admit("k", max_requests=5, window_ms=90_500)
        ttl = await client.ttl("ratelimit:k")
        assert 0 < ttl <= 91

    @pytest.mark.asyncio
    async def test_custom_key_prefix(self, client, clock) -> None:
        store = SharedWindowStore(client, key_prefix="rl:", clock=clock)
        await store.try_admit("ip:10.0.0.1", max_requests=5, window_ms=1_000)
        assert await client.exists("rl:ip:10.0.0.1") == 1


class TestResetAndStatus:
    @pytest.mark.asyncio
    async def test_reset_clears_key_and_is_idempotent(self, store) -> None:
        await store.reset("missing")
        await store.try_admit("k", max_requests=1, window_ms=60_000)

        await store.reset("k")
        await store.reset("k")

        assert await store.status("k") == 0
        assert (await store.try_admit("k", max_requests=1, window_ms=60_000)).allowed is True

    @pytest.mark.asyncio
    async def test_status_sums_weights_without_mutation(self, store, clock) -> None:
        await store.try_admit("k", max_requests=10, window_ms=60_000, weight=2)
        clock.advance(30_000)
        await store.try_admit("k", max_requests=10, window_ms=60_000, weight=3)

        assert await store.status("k") == 5
        assert await store.status("k", window_ms=10_000) == 3
        assert await store.status("k") == 5


class TestFailures:
    @pytest.mark.asyncio
    async def test_disconnected_server_raises_backend_unavailable(self, store, server) -> None:
        server.connected = False

        with pytest.raises(BackendUnavailableError) as exc_info:
            await store.try_admit("k", max_requests=1, window_ms=1_000)

        assert exc_info.value.code == "backend_unavailable"
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)

    @pytest.mark.asyncio
    async def test_reset_and_status_raise_backend_unavailable(self, store, server) -> None:
        server.connected = False

        with pytest.raises(BackendUnavailableError):
            await store.reset("k")
        with pytest.raises(BackendUnavailableError):
            await store.status("k")

    @pytest.mark.asyncio
    async def test_slow_backend_times_out(self, clock) -> None:
        async def hang(*_, **__):
            await asyncio.sleep(5)

        client = MagicMock()
        client.register_script.return_value = hang
        client.ping = AsyncMock(return_value=True)
        store = SharedWindowStore(client, clock=clock, operation_timeout=0.01)

        with pytest.raises(BackendUnavailableError):
            await store.try_admit("k", max_requests=1, window_ms=1_000)


def test_member_encodes_weight_and_is_unique() -> None:
    first = make_member(1_000, 3)
    second = make_member(1_000, 3)

    assert first != second
    assert member_weight(first) == 3
    assert member_weight("legacy-member") == 1
