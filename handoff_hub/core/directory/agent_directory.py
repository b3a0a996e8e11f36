"""
Agent Directory - roster of human agents with capacity tracking.

Every capacity mutation runs under a per-agent asyncio.Lock and is committed
to the in-memory roster only after the repository accepted it, so the
check-and-change is a single atomic step for concurrent callers.

Outstanding transfer offers place a *hold* on one slot of the target agent.
Holds are transient (not persisted); they keep a second request from being
offered a slot that a pending transfer already claims.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from handoff_hub.core.errors import CapacityExceeded, NotFoundError, ValidationError
from handoff_hub.models import ActiveChat, Agent, AgentStatus
from handoff_hub.services.store import AgentRepository, call_with_retry
from handoff_hub.utils import utcnow

logger = structlog.get_logger(__name__)

# Called with the updated agent and its previous status
StatusListener = Callable[[Agent, AgentStatus], Awaitable[None]]


class AgentDirectory:
    """In-memory roster backed by an AgentRepository."""
    
    def __init__(
        self,
        repository: AgentRepository,
        *,
        default_response_time_seconds: int = 60,
        retry_delay_seconds: float = 0.2,
    ) -> None:
        self._repository = repository
        self._default_response_time = default_response_time_seconds
        self._retry_delay = retry_delay_seconds
        
        # Insertion order is the stable directory order used for tie-breaks
        self._agents: dict[str, Agent] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._holds: dict[str, int] = {}
        self._status_listeners: list[StatusListener] = []
    
    async def load(self) -> int:
        """Populate the roster from the repository."""
        agents = await call_with_retry(
            self._repository.list_agents,
            description="list_agents",
            delay_seconds=self._retry_delay,
        )
        for agent in agents:
            self._agents.setdefault(agent.id, agent)
        logger.info("agent_directory_loaded", agents=len(self._agents))
        return len(agents)
    
    async def register_agent(self, agent: Agent) -> Agent:
        """Add a new agent to the roster."""
        async with self._lock_for(agent.id):
            existing = self._agents.get(agent.id) or await call_with_retry(
                lambda: self._repository.load_agent(agent.id),
                description="load_agent",
                delay_seconds=self._retry_delay,
            )
            if existing is not None:
                raise ValidationError(f"Agent already registered: {agent.id}")
            if agent.current_chat_count > agent.max_concurrent_chats:
                raise ValidationError("current_chat_count exceeds max_concurrent_chats")
            stored = agent.model_copy(deep=True)
            await self._persist(stored)
            self._agents[agent.id] = stored
        
        logger.info("agent_registered", agent_id=agent.id, status=agent.status.value)
        return stored.model_copy(deep=True)
    
    def get_agent(self, agent_id: str) -> Agent:
        return self._require(agent_id).model_copy(deep=True)
    
    def list_agents(
        self,
        status: AgentStatus | None = None,
        department: str | None = None,
    ) -> list[Agent]:
        return [
            agent.model_copy(deep=True)
            for agent in self._agents.values()
            if (status is None or agent.status == status)
            and (department is None or agent.department == department)
        ]
    
    def held_offers(self, agent_id: str) -> int:
        return self._holds.get(agent_id, 0)
    
    def find_available_agents(
        self,
        service_type: str | None,
        exclude_agent_id: str | None = None,
    ) -> list[Agent]:
        """
        Rank agents that can take a new chat.
        
        Order: skill match for the service (desc), workload ratio (asc),
        average satisfaction (desc), then directory order. Held offers
        count towards the workload.
        """
        ranked = []
        for position, agent in enumerate(self._agents.values()):
            if agent.id == exclude_agent_id or not agent.is_available:
                continue
            load = agent.current_chat_count + self.held_offers(agent.id)
            if load >= agent.max_concurrent_chats:
                continue
            key = (
                -agent.skill_match(service_type),
                load / agent.max_concurrent_chats,
                -agent.average_satisfaction,
                position,
            )
            ranked.append((key, agent))
        
        ranked.sort(key=lambda item: item[0])
        return [agent.model_copy(deep=True) for _, agent in ranked]
    
    def estimate_wait_seconds(self, agent: Agent) -> int:
        """Average response time scaled by current workload."""
        base = agent.average_response_time or self._default_response_time
        return round(base * (1 + agent.workload_ratio))
    
    async def hold(self, agent_id: str) -> bool:
        """Reserve one slot for an outstanding offer. False if none is free."""
        async with self._lock_for(agent_id):
            agent = self._require(agent_id)
            load = agent.current_chat_count + self.held_offers(agent_id)
            if not agent.is_available or load >= agent.max_concurrent_chats:
                return False
            self._holds[agent_id] = self.held_offers(agent_id) + 1
            return True
    
    async def release_hold(self, agent_id: str) -> None:
        async with self._lock_for(agent_id):
            self._holds[agent_id] = max(0, self.held_offers(agent_id) - 1)
    
    async def assign_chat(
        self,
        agent_id: str,
        chat: ActiveChat,
        *,
        from_hold: bool = False,
    ) -> Agent:
        """
        Atomically check capacity and add a chat to the agent.
        
        With ``from_hold`` the caller's hold is converted into the chat and
        only ``current_chat_count`` is checked; otherwise every held offer
        also counts as taken.
        
        Raises:
            CapacityExceeded: agent unavailable or at capacity
        """
        async with self._lock_for(agent_id):
            agent = self._require(agent_id)
            holds = self.held_offers(agent_id)
            consumes_hold = from_hold and holds > 0
            
            load = agent.current_chat_count if consumes_hold else agent.current_chat_count + holds
            if not agent.is_available or load >= agent.max_concurrent_chats:
                raise CapacityExceeded(f"Agent {agent_id} cannot take new chats")
            if agent.holds_session(chat.session_id):
                raise ValidationError(f"Agent {agent_id} already holds session {chat.session_id}")
            
            updated = agent.model_copy(deep=True)
            updated.current_sessions.append(chat)
            updated.current_chat_count += 1
            updated.last_activity = utcnow()
            await self._persist(updated)
            
            self._agents[agent_id] = updated
            if consumes_hold:
                self._holds[agent_id] = holds - 1
        
        logger.info(
            "chat_assigned",
            agent_id=agent_id,
            session_id=chat.session_id,
            current_chat_count=updated.current_chat_count,
            max_concurrent_chats=updated.max_concurrent_chats,
        )
        return updated.model_copy(deep=True)
    
    async def release_chat(self, agent_id: str, session_id: str, *, to_hold: bool = False) -> Agent:
        """Remove a session from the agent; the counter never goes below zero.
        
        With ``to_hold`` the freed slot goes back to an offer hold, undoing
        ``assign_chat(..., from_hold=True)``.
        """
        async with self._lock_for(agent_id):
            agent = self._require(agent_id)
            if not agent.holds_session(session_id):
                return agent.model_copy(deep=True)
            
            updated = agent.model_copy(deep=True)
            updated.current_sessions = [
                chat for chat in updated.current_sessions if chat.session_id != session_id
            ]
            updated.current_chat_count = max(0, updated.current_chat_count - 1)
            updated.last_activity = utcnow()
            await self._persist(updated)
            self._agents[agent_id] = updated
            if to_hold:
                self._holds[agent_id] = self.held_offers(agent_id) + 1
        
        logger.info("chat_released", agent_id=agent_id, session_id=session_id, to_hold=to_hold)
        return updated.model_copy(deep=True)
    
    async def clear_sessions(self, agent_id: str) -> list[ActiveChat]:
        """Drop every session the agent holds and reset its counter."""
        async with self._lock_for(agent_id):
            agent = self._require(agent_id)
            released = [chat.model_copy(deep=True) for chat in agent.current_sessions]
            
            updated = agent.model_copy(deep=True)
            updated.current_sessions = []
            updated.current_chat_count = 0
            await self._persist(updated)
            self._agents[agent_id] = updated
        
        return released
    
    async def set_status(self, agent_id: str, status: AgentStatus) -> Agent:
        """Update presence and notify status listeners."""
        async with self._lock_for(agent_id):
            agent = self._require(agent_id)
            previous = agent.status
            
            updated = agent.model_copy(deep=True)
            updated.status = status
            updated.last_activity = utcnow()
            await self._persist(updated)
            self._agents[agent_id] = updated
        
        logger.info(
            "agent_status_changed",
            agent_id=agent_id,
            previous=previous.value,
            status=status.value,
        )
        
        for listener in self._status_listeners:
            await listener(updated.model_copy(deep=True), previous)
        
        return self.get_agent(agent_id)
    
    async def update_capacity(self, agent_id: str, max_concurrent_chats: int) -> Agent:
        if not 1 <= max_concurrent_chats <= 10:
            raise ValidationError("max_concurrent_chats must be between 1 and 10")
        
        async with self._lock_for(agent_id):
            agent = self._require(agent_id)
            if max_concurrent_chats < agent.current_chat_count:
                raise ValidationError(
                    f"Agent {agent_id} already holds {agent.current_chat_count} chats"
                )
            updated = agent.model_copy(deep=True)
            updated.max_concurrent_chats = max_concurrent_chats
            await self._persist(updated)
            self._agents[agent_id] = updated
        
        return updated.model_copy(deep=True)
    
    async def record_performance(
        self,
        agent_id: str,
        handle_time: float,
        satisfaction: float | None = None,
    ) -> Agent:
        async with self._lock_for(agent_id):
            updated = self._require(agent_id).model_copy(deep=True)
            updated.record_performance(handle_time, satisfaction)
            await self._persist(updated)
            self._agents[agent_id] = updated
        
        return updated.model_copy(deep=True)
    
    def on_status_change(self, listener: StatusListener) -> None:
        """Register a listener for status changes."""
        self._status_listeners.append(listener)
    
    def stats(self) -> dict:
        agents = list(self._agents.values())
        online = [a for a in agents if a.status == AgentStatus.ONLINE]
        available = [
            a for a in online
            if a.current_chat_count + self.held_offers(a.id) < a.max_concurrent_chats
        ]
        current_chats = sum(a.current_chat_count for a in agents)
        capacity = sum(a.max_concurrent_chats for a in agents)
        
        return {
            "agents": {
                "total": len(agents),
                "online": len(online),
                "available": len(available),
            },
            "workload": {
                "current_chats": current_chats,
                "held_offers": sum(self._holds.values()),
                "total_capacity": capacity,
                "capacity_utilization": round(current_chats / capacity * 100, 1) if capacity else 0.0,
            },
        }
    
    def _require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"Agent not found: {agent_id}")
        return agent
    
    def _lock_for(self, agent_id: str) -> asyncio.Lock:
        return self._locks.setdefault(agent_id, asyncio.Lock())
    
    async def _persist(self, agent: Agent) -> None:
        await call_with_retry(
            lambda: self._repository.save_agent(agent),
            description="save_agent",
            delay_seconds=self._retry_delay,
        )
