"""
Pytest configuration and fixtures for the handoff hub test suite.

Provides:
- Agent and session builders
- A recording live channel standing in for the delivery layer
- A fully wired orchestrator over in-memory stores
- A fake WebSocket for delivery-layer tests
"""

import os
from collections import defaultdict
from dataclasses import dataclass

import pytest
from starlette.websockets import WebSocketState

# Set test environment before importing app modules
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("REALTIME_AGENT_TOKEN_SECRET", "test-secret")

from handoff_hub.config import HandoffSettings
from handoff_hub.core.directory import AgentDirectory
from handoff_hub.core.handoff import HandoffNotifier, TransferOrchestrator
from handoff_hub.models import (
    Agent,
    AgentSkill,
    AgentStatus,
    ChatSession,
    MessageRole,
    Proficiency,
)
from handoff_hub.services.store import (
    InMemoryAgentRepository,
    InMemorySessionStore,
    InMemoryTransferRepository,
)


# ─────────────────────────────────────────────────────────────────────────────
# Builders
# ─────────────────────────────────────────────────────────────────────────────

def make_agent(
    agent_id: str,
    *,
    services: tuple[str, ...] = ("web_development",),
    proficiency: Proficiency = Proficiency.EXPERT,
    max_chats: int = 1,
    status: AgentStatus = AgentStatus.ONLINE,
    satisfaction: float = 0.0,
    **extra,
) -> Agent:
    return Agent(
        id=agent_id,
        name=f"Agent {agent_id.split('-')[-1].upper()}",
        department="support",
        status=status,
        max_concurrent_chats=max_chats,
        skills=[AgentSkill(service=s, proficiency=proficiency) for s in services],
        average_satisfaction=satisfaction,
        **extra,
    )


class RecordingChannel:
    """Live channel fake that records every frame it is asked to deliver."""
    
    def __init__(self) -> None:
        self.agent_frames: dict[str, list[dict]] = defaultdict(list)
        self.customer_frames: dict[str, list[dict]] = defaultdict(list)
    
    async def send_to_agent(self, agent_id: str, message: dict) -> bool:
        self.agent_frames[agent_id].append(message)
        return True
    
    async def send_to_customer(self, session_id: str, message: dict) -> bool:
        self.customer_frames[session_id].append(message)
        return True
    
    def customer_types(self, session_id: str) -> list[str]:
        return [frame["type"] for frame in self.customer_frames[session_id]]


@dataclass
class Hub:
    """Orchestrator and its collaborators over in-memory stores."""
    
    directory: AgentDirectory
    sessions: InMemorySessionStore
    transfers: InMemoryTransferRepository
    orchestrator: TransferOrchestrator
    channel: RecordingChannel
    
    async def add_agents(self, *agents: Agent) -> None:
        for agent in agents:
            await self.directory.register_agent(agent)
    
    async def open_session(
        self,
        customer: str = "Ana",
        service: str = "web_development",
        messages: tuple[str, ...] = ("My site is down", "I need a person"),
    ) -> ChatSession:
        session = ChatSession(customer_name=customer, service_type=service)
        await self.sessions.save_session(session)
        for i, text in enumerate(messages):
            role = MessageRole.USER if i % 2 == 0 else MessageRole.ASSISTANT
            await self.sessions.append_message(session.session_id, role, text)
        return await self.sessions.find_session(session.session_id)


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def handoff_settings() -> HandoffSettings:
    return HandoffSettings(
        persistence_retry_delay_seconds=0,
        max_reroutes=3,
        transfer_timeout_seconds=120,
        webhook_urls=[],
    )


@pytest.fixture
def hub(handoff_settings) -> Hub:
    sessions = InMemorySessionStore()
    transfers = InMemoryTransferRepository()
    directory = AgentDirectory(InMemoryAgentRepository(), retry_delay_seconds=0)
    channel = RecordingChannel()
    orchestrator = TransferOrchestrator(
        directory,
        sessions,
        transfers,
        notifier=HandoffNotifier(channel=channel),
        settings=handoff_settings,
    )
    return Hub(directory, sessions, transfers, orchestrator, channel)


class FakeWebSocket:
    """Minimal stand-in for a server-side WebSocket."""
    
    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED
        self.close_code: int | None = None
    
    async def accept(self) -> None:
        return None
    
    async def send_json(self, message: dict) -> None:
        if self.application_state != WebSocketState.CONNECTED:
            raise RuntimeError("WebSocket is not connected")
        self.sent.append(message)
    
    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.application_state = WebSocketState.DISCONNECTED
    
    def drop(self) -> None:
        """Simulate the peer going away."""
        self.client_state = WebSocketState.DISCONNECTED
    
    def types(self) -> list[str]:
        return [message["type"] for message in self.sent]
