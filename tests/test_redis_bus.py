"""Frontdesk – Redis Bus Unit Tests.

Tests: connection lifecycle, queue push, health check, error handling.
Uses fakeredis for isolation – no real Redis needed.
"""

import fakeredis.aioredis
import pytest

from frontdesk.core.redis_bus import RedisBus


class TestRedisBusConnection:
    """Test Redis connection lifecycle."""

    @pytest.mark.anyio
    async def test_health_check_returns_false_when_disconnected(self) -> None:
        bus = RedisBus(redis_url="redis://fake:6379/0")
        assert await bus.health_check() is False

    @pytest.mark.anyio
    async def test_push_raises_when_disconnected(self) -> None:
        bus = RedisBus(redis_url="redis://fake:6379/0")
        with pytest.raises(RuntimeError, match="not connected"):
            await bus.push_to_queue("tacme:learning", "{}")

    def test_client_property_raises_when_disconnected(self) -> None:
        bus = RedisBus()
        with pytest.raises(RuntimeError, match="not connected"):
            _ = bus.client


class TestRedisBusQueue:
    """Queue helpers against fakeredis."""

    @pytest.fixture
    async def bus(self):
        bus = RedisBus()
        # Inject fakeredis client directly
        bus._client = fakeredis.aioredis.FakeRedis(decode_responses=True)
        yield bus
        await bus.disconnect()

    @pytest.mark.anyio
    async def test_health_check_returns_true_when_connected(self, bus: RedisBus) -> None:
        assert await bus.health_check() is True

    @pytest.mark.anyio
    async def test_push_appends_in_order(self, bus: RedisBus) -> None:
        assert await bus.push_to_queue("tacme:learning", '{"n": 1}') == 1
        assert await bus.push_to_queue("tacme:learning", '{"n": 2}') == 2
        assert await bus.client.lrange("tacme:learning", 0, -1) == ['{"n": 1}', '{"n": 2}']

    @pytest.mark.anyio
    async def test_disconnect_clears_client(self, bus: RedisBus) -> None:
        await bus.disconnect()
        assert await bus.health_check() is False
