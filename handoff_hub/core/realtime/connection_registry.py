"""
Connection registries for the real-time delivery layer.
A registry maps one key (agent id or session id) to its live connection;
each key has its own lock so registration and sends on one key never race.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import uuid4

import structlog
from fastapi import WebSocket, WebSocketDisconnect
from starlette.websockets import WebSocketState

from handoff_hub.utils import KeyedLock, utcnow
from handoff_hub.utils.metrics import ACTIVE_CONNECTIONS, DELIVERY_DROPS

logger = structlog.get_logger(__name__)


@dataclass(eq=False)
class ClientConnection:
    """One duplex connection and the identity it authenticated as."""
    
    websocket: WebSocket
    connection_id: str = field(default_factory=lambda: str(uuid4()))
    user_type: str | None = None  # "agent" or "customer" once authenticated
    agent_id: str | None = None
    agent_name: str | None = None
    agent_role: str | None = None
    session_id: str | None = None
    customer_name: str | None = None
    connected_at: datetime = field(default_factory=utcnow)
    last_heartbeat: datetime = field(default_factory=utcnow)
    
    @property
    def authenticated(self) -> bool:
        return self.user_type is not None
    
    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )
    
    async def send(self, message: dict[str, Any]) -> None:
        await self.websocket.send_json(message)


class ConnectionRegistry:
    """Concurrent key -> connection map with best-effort sends."""
    
    def __init__(self, name: str, send_timeout_seconds: float = 5.0) -> None:
        self.name = name
        self._send_timeout = send_timeout_seconds
        self._connections: dict[str, ClientConnection] = {}
        self._locks = KeyedLock()
    
    async def register(self, key: str, connection: ClientConnection) -> ClientConnection | None:
        """Bind the key to the connection; returns the connection it replaced."""
        async with self._locks.hold(key):
            previous = self._connections.get(key)
            self._connections[key] = connection
        
        if previous is None:
            ACTIVE_CONNECTIONS.labels(user_type=self.name).inc()
        logger.info(
            "connection_registered",
            registry=self.name,
            key=key,
            connection_id=connection.connection_id,
            replaced=previous is not None,
        )
        return previous
    
    async def unregister(self, key: str, connection: ClientConnection | None = None) -> bool:
        """Remove the key, only if it is still bound to ``connection`` when given."""
        async with self._locks.hold(key):
            current = self._connections.get(key)
            if current is None or (connection is not None and current is not connection):
                return False
            del self._connections[key]
        
        ACTIVE_CONNECTIONS.labels(user_type=self.name).dec()
        logger.info("connection_unregistered", registry=self.name, key=key)
        return True
    
    def get(self, key: str) -> ClientConnection | None:
        return self._connections.get(key)
    
    def keys(self) -> list[str]:
        return list(self._connections)
    
    def __contains__(self, key: str) -> bool:
        return key in self._connections
    
    def __len__(self) -> int:
        return len(self._connections)
    
    async def send(self, key: str, message: dict[str, Any]) -> bool:
        """
        Deliver to the key's connection if it is open.
        
        Absent or closed connections are a no-op: the drop is logged and
        metered, and False is returned. Nothing is queued for redelivery.
        """
        async with self._locks.hold(key):
            connection = self._connections.get(key)
            if connection is None or not connection.is_open:
                self._record_drop(key, message, "not_connected")
                return False
            
            try:
                await asyncio.wait_for(connection.send(message), timeout=self._send_timeout)
                return True
            except (asyncio.TimeoutError, WebSocketDisconnect, RuntimeError, OSError) as e:
                self._record_drop(key, message, type(e).__name__)
                stale = connection
        
        await self.unregister(key, stale)
        return False
    
    async def broadcast(
        self,
        message: dict[str, Any],
        exclude: str | None = None,
        only: set[str] | None = None,
    ) -> int:
        """Send to every registered key; returns the number delivered."""
        delivered = 0
        for key in self.keys():
            if key == exclude or (only is not None and key not in only):
                continue
            if await self.send(key, message):
                delivered += 1
        return delivered
    
    def _record_drop(self, key: str, message: dict[str, Any], cause: str) -> None:
        DELIVERY_DROPS.labels(channel=self.name).inc()
        logger.debug(
            "delivery_dropped",
            registry=self.name,
            key=key,
            message_type=message.get("type"),
            cause=cause,
        )
