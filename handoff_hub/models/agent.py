"""
Agent data models.
Agents are the human responders a conversation can be handed to.
"""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from handoff_hub.models.transfer import TransferPriority
from handoff_hub.utils import utcnow


class AgentStatus(str, Enum):
    """Presence status of an agent."""
    
    ONLINE = "online"
    OFFLINE = "offline"
    BUSY = "busy"
    AWAY = "away"
    BREAK = "break"


class AgentRole(str, Enum):
    """Role within the support team."""
    
    AGENT = "agent"
    SENIOR_AGENT = "senior_agent"
    SUPERVISOR = "supervisor"
    ADMIN = "admin"


class Proficiency(str, Enum):
    """Skill proficiency level."""
    
    BEGINNER = "beginner"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"
    EXPERT = "expert"
    
    @property
    def weight(self) -> int:
        return {"beginner": 1, "intermediate": 2, "advanced": 3, "expert": 4}[self.value]


class AgentSkill(BaseModel):
    """A service the agent can handle."""
    
    service: str
    proficiency: Proficiency = Proficiency.INTERMEDIATE


class ActiveChat(BaseModel):
    """Metadata for a session currently held by an agent."""
    
    session_id: str
    customer_name: str | None = None
    service_type: str | None = None
    priority: TransferPriority = TransferPriority.MEDIUM
    started_at: datetime = Field(default_factory=utcnow)


class Agent(BaseModel):
    """Human support agent with capacity and performance tracking."""
    
    id: str
    name: str
    email: str | None = None
    department: str = "general"
    role: AgentRole = AgentRole.AGENT
    
    # Status and capacity
    status: AgentStatus = AgentStatus.OFFLINE
    max_concurrent_chats: int = Field(default=3, ge=1, le=10)
    current_chat_count: int = Field(default=0, ge=0)
    current_sessions: list[ActiveChat] = Field(default_factory=list)
    
    skills: list[AgentSkill] = Field(default_factory=list)
    
    # Performance metrics
    total_chats_handled: int = 0
    average_response_time: float = Field(default=0.0, description="Seconds")
    average_satisfaction: float = 0.0
    total_ratings: int = 0
    
    last_activity: datetime = Field(default_factory=utcnow)
    
    @property
    def is_available(self) -> bool:
        return self.status == AgentStatus.ONLINE
    
    @property
    def workload_ratio(self) -> float:
        return self.current_chat_count / self.max_concurrent_chats
    
    def has_capacity(self) -> bool:
        return self.current_chat_count < self.max_concurrent_chats
    
    def can_take_new_chat(self) -> bool:
        return self.is_available and self.has_capacity()
    
    def skill_match(self, service_type: str | None) -> int:
        """Proficiency weight for the service, 0 when the agent lacks the skill."""
        if not service_type:
            return 0
        return max(
            (skill.proficiency.weight for skill in self.skills if skill.service == service_type),
            default=0,
        )
    
    def holds_session(self, session_id: str) -> bool:
        return any(chat.session_id == session_id for chat in self.current_sessions)
    
    def record_performance(self, handle_time: float, satisfaction: float | None = None) -> None:
        """Fold one finished chat into the running averages."""
        self.total_chats_handled += 1
        self.average_response_time = (
            self.average_response_time * (self.total_chats_handled - 1) + handle_time
        ) / self.total_chats_handled
        
        if satisfaction:
            self.total_ratings += 1
            self.average_satisfaction = (
                self.average_satisfaction * (self.total_ratings - 1) + satisfaction
            ) / self.total_ratings


class AgentSummary(BaseModel):
    """Public view of an agent attached to transfer results."""
    
    id: str
    name: str
    department: str
    average_response_time: float = 0.0
    
    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentSummary":
        return cls(
            id=agent.id,
            name=agent.name,
            department=agent.department,
            average_response_time=agent.average_response_time,
        )
