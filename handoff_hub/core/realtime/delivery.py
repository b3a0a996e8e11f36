"""
Real-Time Delivery Layer.

Routes JSON frames between agent and customer connections. Chat messages are
persisted to the session store first and then delivered live on a
best-effort basis; typing indicators and status broadcasts are never
persisted. Messages from one side of a session keep their arrival order.
"""

from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import pydantic
import structlog
from fastapi import WebSocket

from handoff_hub.core.directory import AgentDirectory
from handoff_hub.core.errors import HandoffError, Unauthorized, ValidationError
from handoff_hub.core.realtime.auth import AgentAuthenticator
from handoff_hub.core.realtime.connection_registry import ClientConnection, ConnectionRegistry
from handoff_hub.core.realtime.messages import (
    AuthenticatePayload,
    ChatMessagePayload,
    TypingPayload,
)
from handoff_hub.models import (
    Agent,
    AgentRole,
    AgentStatus,
    ChatSession,
    MessageRole,
    SessionStage,
    Transfer,
)
from handoff_hub.services.store import SessionStore, call_with_retry
from handoff_hub.utils import KeyedLock, utcnow

logger = structlog.get_logger(__name__)

MessageHandler = Callable[[ClientConnection, dict[str, Any]], Awaitable[dict[str, Any] | None]]
PendingTransfersProvider = Callable[[str], Awaitable[list[Transfer]]]

P = TypeVar("P", bound=pydantic.BaseModel)

SUPERVISOR_ROLES = (AgentRole.SUPERVISOR.value, AgentRole.ADMIN.value)


def parse_payload(model: type[P], payload: Any) -> P:
    if not isinstance(payload, dict):
        raise ValidationError("payload must be an object")
    try:
        return model.model_validate(payload)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid payload: {e.errors()[0]['msg']}") from e


def require_agent(connection: ClientConnection) -> str:
    if connection.user_type != "agent":
        raise Unauthorized("Only agents can send this message")
    return connection.agent_id


class DeliveryLayer:
    """Connection registries and message routing for agents and customers."""

    def __init__(
        self,
        sessions: SessionStore,
        authenticator: AgentAuthenticator,
        *,
        directory: AgentDirectory | None = None,
        agents: ConnectionRegistry | None = None,
        customers: ConnectionRegistry | None = None,
        retry_delay_seconds: float = 0.2,
    ) -> None:
        self.sessions = sessions
        self.authenticator = authenticator
        self.directory = directory
        self.agents = agents or ConnectionRegistry("agent")
        self.customers = customers or ConnectionRegistry("customer")
        self._retry_delay = retry_delay_seconds
        self._pending_transfers: PendingTransfersProvider | None = None
        self._channel_locks = KeyedLock()

        self._handlers: dict[str, MessageHandler] = {
            "heartbeat": self._on_heartbeat,
            "agent_message": self._on_agent_message,
            "customer_message": self._on_customer_message,
            "typing_indicator": self._on_typing_indicator,
        }

        if directory is not None:
            directory.on_status_change(self.broadcast_agent_status)

    def register_handler(self, message_type: str, handler: MessageHandler) -> None:
        """Route an additional message type for authenticated connections."""
        self._handlers[message_type] = handler

    def set_pending_transfers_provider(self, provider: PendingTransfersProvider) -> None:
        self._pending_transfers = provider

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self, websocket: WebSocket) -> ClientConnection:
        await websocket.accept()
        connection = ClientConnection(websocket=websocket)
        await connection.send({
            "type": "connection",
            "message": "Connected to support system",
            "timestamp": utcnow().isoformat(),
        })
        return connection

    async def disconnect(self, connection: ClientConnection) -> None:
        """Drop the connection from its registry; nothing is kept for reconnects."""
        if connection.user_type == "agent":
            await self.agents.unregister(connection.agent_id, connection)
        elif connection.user_type == "customer":
            await self.customers.unregister(connection.session_id, connection)

        logger.info(
            "connection_closed",
            connection_id=connection.connection_id,
            user_type=connection.user_type,
            agent_id=connection.agent_id,
            session_id=connection.session_id,
        )

    async def handle(self, connection: ClientConnection, frame: Any) -> None:
        """Dispatch one inbound frame; errors become ``error`` frames."""
        try:
            response = await self._dispatch(connection, frame)
        except HandoffError as e:
            logger.info(
                "realtime_message_rejected",
                connection_id=connection.connection_id,
                code=e.code,
                error=e.message,
            )
            response = {"type": "error", "code": e.code, "message": e.message}

        if response is not None:
            await self._reply(connection, response)

    async def _dispatch(self, connection: ClientConnection, frame: Any) -> dict[str, Any] | None:
        if not isinstance(frame, dict) or not isinstance(frame.get("type"), str):
            raise ValidationError("Invalid message format")

        message_type = frame["type"]
        payload = frame.get("payload") or {}

        if message_type == "authenticate":
            return await self.authenticate(connection, payload, frame.get("token"))
        if not connection.authenticated:
            raise Unauthorized("Authenticate before sending messages")

        handler = self._handlers.get(message_type)
        if handler is None:
            raise ValidationError(f"Unknown message type: {message_type}")
        return await handler(connection, payload)

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def authenticate(
        self,
        connection: ClientConnection,
        payload: Any,
        token: str | None = None,
    ) -> None:
        """
        Admit the connection as an agent (signed credential) or a customer
        (existing session id). A failure sends ``auth_error`` and closes.
        """
        if connection.authenticated:
            raise ValidationError("Connection already authenticated")

        try:
            auth = parse_payload(AuthenticatePayload, payload)
            if auth.user_type == "agent":
                response = await self._admit_agent(connection, auth.credential or token)
            else:
                response = await self._admit_customer(connection, auth.session_id)
        except HandoffError as e:
            logger.warning(
                "authentication_failed",
                connection_id=connection.connection_id,
                code=e.code,
                error=e.message,
            )
            await self._reply(connection, {
                "type": "auth_error",
                "message": "Authentication failed",
                "error": e.message,
            })
            if connection.is_open:
                await connection.websocket.close(code=4401)
            return None

        await self._reply(connection, response)
        if connection.user_type == "agent":
            await self._send_pending_transfers(connection)
        return None

    async def _admit_agent(self, connection: ClientConnection, credential: str | None) -> dict[str, Any]:
        agent_id = self.authenticator.verify(credential)
        agent = self.directory.get_agent(agent_id) if self.directory else None

        connection.user_type = "agent"
        connection.agent_id = agent_id
        connection.agent_name = agent.name if agent else None
        connection.agent_role = agent.role.value if agent else None
        await self.agents.register(agent_id, connection)

        logger.info("agent_connected", agent_id=agent_id, connection_id=connection.connection_id)
        return {
            "type": "authenticated",
            "userType": "agent",
            "agentId": agent_id,
            "agentName": connection.agent_name,
            "message": "Agent authenticated successfully",
        }

    async def _admit_customer(self, connection: ClientConnection, session_id: str | None) -> dict[str, Any]:
        if not session_id:
            raise Unauthorized("Missing session id")
        session = await self._find_session(session_id)
        if session is None:
            raise Unauthorized(f"Session not found: {session_id}")

        connection.user_type = "customer"
        connection.session_id = session_id
        connection.customer_name = session.customer_name
        await self.customers.register(session_id, connection)

        logger.info("customer_connected", session_id=session_id, connection_id=connection.connection_id)
        return {
            "type": "authenticated",
            "userType": "customer",
            "sessionId": session_id,
            "customerName": session.customer_name,
            "message": "Customer authenticated successfully",
        }

    async def _send_pending_transfers(self, connection: ClientConnection) -> None:
        if self._pending_transfers is None:
            return
        try:
            transfers = await self._pending_transfers(connection.agent_id)
        except HandoffError as e:
            logger.warning("pending_transfers_unavailable", agent_id=connection.agent_id, error=e.message)
            return

        await self.agents.send(connection.agent_id, {
            "type": "pending_transfers",
            "transfers": [t.model_dump(mode="json") for t in transfers],
            "count": len(transfers),
            "timestamp": utcnow().isoformat(),
        })

    # ------------------------------------------------------------------
    # Chat routing
    # ------------------------------------------------------------------

    async def send_agent_message(
        self,
        session_id: str,
        agent_id: str,
        text: str,
        *,
        agent_name: str | None = None,
        message_type: str = "text",
    ) -> bool:
        """Persist an agent message, then attempt live delivery to the customer."""
        async with self._channel_locks.hold((session_id, "agent")):
            entry = await self._store(
                lambda: self.sessions.append_message(
                    session_id,
                    MessageRole.AGENT,
                    text,
                    {"agent_id": agent_id, "agent_name": agent_name, "message_type": message_type},
                ),
                "append_message",
            )
            return await self.customers.send(session_id, {
                "type": "agent_message",
                "sessionId": session_id,
                "message": text,
                "messageType": message_type,
                "agentName": agent_name,
                "timestamp": entry.timestamp.isoformat(),
            })

    async def send_customer_message(
        self,
        session_id: str,
        text: str,
        *,
        customer_name: str | None = None,
    ) -> bool:
        """Persist a customer message, then attempt live delivery to the assigned agent."""
        async with self._channel_locks.hold((session_id, "customer")):
            entry = await self._store(
                lambda: self.sessions.append_message(session_id, MessageRole.USER, text),
                "append_message",
            )
            session = await self._find_session(session_id)
            if session is None or not session.assigned_agent_id or session.stage != SessionStage.HUMAN_AGENT:
                return False

            return await self.agents.send(session.assigned_agent_id, {
                "type": "customer_message",
                "sessionId": session_id,
                "message": text,
                "customerName": customer_name or session.customer_name,
                "timestamp": entry.timestamp.isoformat(),
            })

    async def _on_agent_message(self, connection: ClientConnection, payload: Any) -> dict[str, Any]:
        agent_id = require_agent(connection)
        message = parse_payload(ChatMessagePayload, payload)
        session = await self._assigned_session(message.session_id, agent_id)

        delivered = await self.send_agent_message(
            session.session_id,
            agent_id,
            message.message,
            agent_name=connection.agent_name,
            message_type=message.message_type,
        )
        return {
            "type": "message_sent",
            "sessionId": session.session_id,
            "delivered": delivered,
            "timestamp": utcnow().isoformat(),
        }

    async def _on_customer_message(self, connection: ClientConnection, payload: Any) -> dict[str, Any]:
        if connection.user_type != "customer":
            raise Unauthorized("Only customers can send this message")
        message = parse_payload(ChatMessagePayload, payload)

        delivered = await self.send_customer_message(
            connection.session_id,
            message.message,
            customer_name=connection.customer_name,
        )
        return {
            "type": "message_sent",
            "sessionId": connection.session_id,
            "delivered": delivered,
            "timestamp": utcnow().isoformat(),
        }

    async def _on_typing_indicator(self, connection: ClientConnection, payload: Any) -> None:
        typing = parse_payload(TypingPayload, payload)

        if connection.user_type == "agent":
            session = await self._assigned_session(typing.session_id, connection.agent_id)
            await self.customers.send(session.session_id, {
                "type": "agent_typing",
                "isTyping": typing.is_typing,
                "agentName": connection.agent_name,
                "timestamp": utcnow().isoformat(),
            })
            return None

        session = await self._find_session(connection.session_id)
        if session and session.assigned_agent_id and session.stage == SessionStage.HUMAN_AGENT:
            await self.agents.send(session.assigned_agent_id, {
                "type": "customer_typing",
                "sessionId": connection.session_id,
                "isTyping": typing.is_typing,
                "customerName": connection.customer_name,
                "timestamp": utcnow().isoformat(),
            })
        return None

    async def _on_heartbeat(self, connection: ClientConnection, payload: Any) -> dict[str, Any]:
        connection.last_heartbeat = utcnow()
        return {"type": "heartbeat_response", "timestamp": connection.last_heartbeat.isoformat()}

    # ------------------------------------------------------------------
    # Outbound (LiveChannel)
    # ------------------------------------------------------------------

    async def send_to_agent(self, agent_id: str, message: dict[str, Any]) -> bool:
        return await self.agents.send(agent_id, message)

    async def send_to_customer(self, session_id: str, message: dict[str, Any]) -> bool:
        return await self.customers.send(session_id, message)

    async def broadcast_agent_status(self, agent: Agent, previous: AgentStatus) -> int:
        """Tell connected supervisors and admins about a presence change."""
        supervisors = {
            key for key in self.agents.keys()
            if (connection := self.agents.get(key)) and connection.agent_role in SUPERVISOR_ROLES
        }
        return await self.agents.broadcast(
            {
                "type": "agent_status_update",
                "agentId": agent.id,
                "agentName": agent.name,
                "status": agent.status.value,
                "previousStatus": previous.value,
                "timestamp": utcnow().isoformat(),
            },
            exclude=agent.id,
            only=supervisors,
        )

    async def broadcast_system_notification(self, message: str, level: str = "info") -> int:
        return await self.agents.broadcast({
            "type": "system_notification",
            "level": level,
            "message": message,
            "timestamp": utcnow().isoformat(),
        })

    def connection_stats(self) -> dict[str, int]:
        return {"agents": len(self.agents), "customers": len(self.customers)}

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _reply(self, connection: ClientConnection, message: dict[str, Any]) -> None:
        if not connection.is_open:
            return
        try:
            await connection.send(message)
        except (RuntimeError, OSError) as e:
            logger.warning("reply_failed", connection_id=connection.connection_id, error=str(e))

    async def _assigned_session(self, session_id: str | None, agent_id: str) -> ChatSession:
        if not session_id:
            raise ValidationError("sessionId is required")
        session = await self._find_session(session_id)
        if session is None or session.assigned_agent_id != agent_id:
            raise Unauthorized(f"Agent {agent_id} is not assigned to session {session_id}")
        return session

    async def _find_session(self, session_id: str) -> ChatSession | None:
        return await self._store(lambda: self.sessions.find_session(session_id), "find_session")

    async def _store(self, operation, description: str):
        return await call_with_retry(operation, description=description, delay_seconds=self._retry_delay)
