"""
Connection registry tests.

Tests registration, replacement and best-effort sends over fake sockets.
"""

import asyncio

import pytest

from handoff_hub.core.realtime import ClientConnection, ConnectionRegistry
from tests.conftest import FakeWebSocket


class SlowWebSocket(FakeWebSocket):
    async def send_json(self, message: dict) -> None:
        await asyncio.sleep(1)


def connection() -> ClientConnection:
    return ClientConnection(websocket=FakeWebSocket())


class TestRegistration:

    @pytest.mark.asyncio
    async def test_register_replaces_previous(self):
        registry = ConnectionRegistry("agent")
        first, second = connection(), connection()
        
        assert await registry.register("agent-a", first) is None
        assert await registry.register("agent-a", second) is first
        assert registry.get("agent-a") is second
        assert len(registry) == 1

    @pytest.mark.asyncio
    async def test_stale_unregister_keeps_newer_connection(self):
        registry = ConnectionRegistry("agent")
        first, second = connection(), connection()
        await registry.register("agent-a", first)
        await registry.register("agent-a", second)
        
        assert await registry.unregister("agent-a", first) is False
        assert "agent-a" in registry
        assert await registry.unregister("agent-a", second) is True
        assert "agent-a" not in registry
        assert len(registry._locks) == 0


class TestSend:

    @pytest.mark.asyncio
    async def test_send_to_open_connection(self):
        registry = ConnectionRegistry("customer")
        conn = connection()
        await registry.register("s1", conn)
        
        assert await registry.send("s1", {"type": "ping"}) is True
        assert conn.websocket.types() == ["ping"]

    @pytest.mark.asyncio
    async def test_absent_key_is_dropped(self):
        registry = ConnectionRegistry("customer")
        
        assert await registry.send("missing", {"type": "ping"}) is False

    @pytest.mark.asyncio
    async def test_closed_connection_is_skipped(self):
        registry = ConnectionRegistry("customer")
        conn = connection()
        await registry.register("s1", conn)
        conn.websocket.drop()
        
        assert await registry.send("s1", {"type": "ping"}) is False
        assert conn.websocket.sent == []

    @pytest.mark.asyncio
    async def test_failed_send_unregisters(self):
        registry = ConnectionRegistry("customer")
        conn = connection()
        await registry.register("s1", conn)
        
        async def broken(message):
            raise RuntimeError("socket gone")
        conn.websocket.send_json = broken
        
        assert await registry.send("s1", {"type": "ping"}) is False
        assert "s1" not in registry

    @pytest.mark.asyncio
    async def test_slow_send_times_out(self):
        registry = ConnectionRegistry("agent", send_timeout_seconds=0.01)
        await registry.register("agent-a", ClientConnection(websocket=SlowWebSocket()))
        
        assert await registry.send("agent-a", {"type": "ping"}) is False
        assert "agent-a" not in registry

    @pytest.mark.asyncio
    async def test_broadcast_filters(self):
        registry = ConnectionRegistry("agent")
        conns = {key: connection() for key in ("a", "b", "c")}
        for key, conn in conns.items():
            await registry.register(key, conn)
        
        assert await registry.broadcast({"type": "note"}, exclude="a") == 2
        assert await registry.broadcast({"type": "note"}, only={"c"}) == 1
        assert conns["a"].websocket.sent == []
        assert len(conns["c"].websocket.sent) == 2
