"""
In-memory persistence adapters.
Used for development and tests; every read returns a copy so callers cannot
mutate stored state by reference.
"""

import asyncio
from typing import Any

from handoff_hub.core.errors import NotFoundError
from handoff_hub.models import (
    Agent,
    ChatSession,
    ConversationMessage,
    MessageRole,
    SessionStage,
    Transfer,
    TransferPriority,
    TransferStatus,
)
from handoff_hub.services.store.base import AgentRepository, SessionStore, TransferRepository
from handoff_hub.utils import utcnow


class InMemorySessionStore(SessionStore):
    """Session store backed by a dict."""
    
    def __init__(self) -> None:
        self._sessions: dict[str, ChatSession] = {}
        self._lock = asyncio.Lock()
    
    async def find_session(self, session_id: str) -> ChatSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session else None
    
    async def save_session(self, session: ChatSession) -> ChatSession:
        async with self._lock:
            self._sessions[session.session_id] = session.model_copy(deep=True)
        return session
    
    async def append_message(
        self,
        session_id: str,
        role: MessageRole,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        async with self._lock:
            session = self._require(session_id)
            entry = ConversationMessage(role=role, message=text, metadata=metadata or {})
            session.conversation_history.append(entry)
            session.updated_at = entry.timestamp
        return entry.model_copy(deep=True)
    
    async def set_assignment(
        self,
        session_id: str,
        agent_id: str | None,
        stage: SessionStage,
    ) -> ChatSession:
        async with self._lock:
            session = self._require(session_id)
            session.assigned_agent_id = agent_id
            session.stage = stage
            if stage == SessionStage.HUMAN_AGENT:
                session.escalated = False
                session.escalation_priority = None
            session.updated_at = utcnow()
            return session.model_copy(deep=True)
    
    async def mark_escalated(
        self,
        session_id: str,
        priority: TransferPriority,
    ) -> ChatSession:
        async with self._lock:
            session = self._require(session_id)
            session.escalated = True
            session.escalation_priority = priority
            session.updated_at = utcnow()
            return session.model_copy(deep=True)
    
    def _require(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session


class InMemoryAgentRepository(AgentRepository):
    """Agent repository backed by an insertion-ordered dict."""
    
    def __init__(self, agents: list[Agent] | None = None) -> None:
        self._agents: dict[str, Agent] = {
            agent.id: agent.model_copy(deep=True) for agent in agents or []
        }
    
    async def load_agent(self, agent_id: str) -> Agent | None:
        agent = self._agents.get(agent_id)
        return agent.model_copy(deep=True) if agent else None
    
    async def save_agent(self, agent: Agent) -> None:
        self._agents[agent.id] = agent.model_copy(deep=True)
    
    async def list_agents(self) -> list[Agent]:
        return [agent.model_copy(deep=True) for agent in self._agents.values()]


class InMemoryTransferRepository(TransferRepository):
    """Append-only transfer log."""
    
    def __init__(self) -> None:
        self._transfers: dict[str, Transfer] = {}
    
    async def add(self, transfer: Transfer) -> None:
        if transfer.transfer_id in self._transfers:
            raise ValueError(f"Duplicate transfer id: {transfer.transfer_id}")
        self._transfers[transfer.transfer_id] = transfer.model_copy(deep=True)
    
    async def get(self, transfer_id: str) -> Transfer | None:
        transfer = self._transfers.get(transfer_id)
        return transfer.model_copy(deep=True) if transfer else None
    
    async def update(self, transfer: Transfer) -> None:
        if transfer.transfer_id not in self._transfers:
            raise NotFoundError(f"Transfer not found: {transfer.transfer_id}")
        self._transfers[transfer.transfer_id] = transfer.model_copy(deep=True)
    
    async def find(
        self,
        *,
        session_id: str | None = None,
        to_agent_id: str | None = None,
        status: TransferStatus | None = None,
    ) -> list[Transfer]:
        return [
            transfer.model_copy(deep=True)
            for transfer in self._transfers.values()
            if (session_id is None or transfer.session_id == session_id)
            and (to_agent_id is None or transfer.to_agent_id == to_agent_id)
            and (status is None or transfer.status == status)
        ]
