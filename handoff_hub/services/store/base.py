"""
Persistence interfaces consumed by the handoff core.
Adapters raise StoreError for transient failures; callers retry once.
"""

from abc import ABC, abstractmethod
from typing import Any

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


class SessionStore(ABC):
    """Conversation history and assignment state."""
    
    @abstractmethod
    async def find_session(self, session_id: str) -> ChatSession | None:
        ...
    
    @abstractmethod
    async def save_session(self, session: ChatSession) -> ChatSession:
        ...
    
    @abstractmethod
    async def append_message(
        self,
        session_id: str,
        role: MessageRole,
        text: str,
        metadata: dict[str, Any] | None = None,
    ) -> ConversationMessage:
        """Append to the ordered history. Raises NotFoundError for unknown sessions."""
    
    @abstractmethod
    async def set_assignment(
        self,
        session_id: str,
        agent_id: str | None,
        stage: SessionStage,
    ) -> ChatSession:
        ...
    
    @abstractmethod
    async def mark_escalated(
        self,
        session_id: str,
        priority: TransferPriority,
    ) -> ChatSession:
        ...


class AgentRepository(ABC):
    """Durable agent records."""
    
    @abstractmethod
    async def load_agent(self, agent_id: str) -> Agent | None:
        ...
    
    @abstractmethod
    async def save_agent(self, agent: Agent) -> None:
        ...
    
    @abstractmethod
    async def list_agents(self) -> list[Agent]:
        ...


class TransferRepository(ABC):
    """Append-only transfer records; no delete operation."""
    
    @abstractmethod
    async def add(self, transfer: Transfer) -> None:
        ...
    
    @abstractmethod
    async def get(self, transfer_id: str) -> Transfer | None:
        ...
    
    @abstractmethod
    async def update(self, transfer: Transfer) -> None:
        ...
    
    @abstractmethod
    async def find(
        self,
        *,
        session_id: str | None = None,
        to_agent_id: str | None = None,
        status: TransferStatus | None = None,
    ) -> list[Transfer]:
        """Matching transfers in creation order."""
