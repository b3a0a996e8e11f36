"""
Transfer data models for handoffs between the AI assistant and human agents.
A transfer is one attempt to move a session to a specific agent; reroutes
create new records and terminal records are never modified again.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from pydantic import BaseModel, Field

from handoff_hub.utils import utcnow


class TransferPriority(str, Enum):
    """Priority of a handoff."""
    
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"
    
    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3, "urgent": 4}[self.value]


class TransferStatus(str, Enum):
    """Lifecycle status of a transfer."""
    
    PENDING = "pending"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferReason(str, Enum):
    """Why the handoff was requested."""
    
    CUSTOMER_REQUEST = "customer_request"
    AI_ESCALATION = "ai_escalation"
    COMPLEXITY_ESCALATION = "complexity_escalation"
    SKILL_MISMATCH = "skill_mismatch"
    TECHNICAL_ISSUE = "technical_issue"
    AGENT_UNAVAILABLE = "agent_unavailable"
    WORKLOAD_BALANCE = "workload_balance"
    EMERGENCY = "emergency"


class TransferTrigger(str, Enum):
    """What initiated the transfer record."""
    
    AUTOMATIC = "automatic"
    MANUAL = "manual"
    CUSTOMER_INITIATED = "customer_initiated"


class TransferSource(str, Enum):
    """Responder the session is moving away from."""
    
    AI = "ai"
    AGENT = "agent"


class TransferContext(BaseModel):
    """Context handed to the receiving agent."""
    
    summary: str = "Customer needs human assistance"
    customer_issue: str | None = None
    urgency_level: TransferPriority = TransferPriority.MEDIUM
    ai_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    detected_complexity: str = "moderate"
    previous_attempts: int = 0
    special_instructions: str | None = None


class SnapshotMessage(BaseModel):
    """Conversation message copied into a transfer."""
    
    role: str
    message: str
    timestamp: datetime


class AgentResponse(BaseModel):
    """The target agent's answer to the offer."""
    
    accepted: bool
    reason: str | None = None
    responded_at: datetime = Field(default_factory=utcnow)


class TransferMetrics(BaseModel):
    """Timing figures for analytics, in seconds."""
    
    transfer_time: float | None = None
    resolution_time: float | None = None


class Transfer(BaseModel):
    """Append-only record of one handoff attempt."""
    
    transfer_id: str = Field(default_factory=lambda: str(uuid4()))
    session_id: str
    
    # Participants
    from_type: TransferSource = TransferSource.AI
    from_agent_id: str | None = None
    to_agent_id: str
    
    reason: TransferReason
    trigger: TransferTrigger = TransferTrigger.MANUAL
    priority: TransferPriority = TransferPriority.MEDIUM
    status: TransferStatus = TransferStatus.PENDING
    
    # Customer and service info
    customer_name: str | None = None
    service_type: str | None = None
    
    # Context snapshot
    context: TransferContext = Field(default_factory=TransferContext)
    conversation_snapshot: list[SnapshotMessage] = Field(default_factory=list)
    reroute_count: int = 0
    
    # Timestamps
    requested_at: datetime = Field(default_factory=utcnow)
    responded_at: datetime | None = None
    completed_at: datetime | None = None
    
    # Outcome
    agent_response: AgentResponse | None = None
    handoff_message: str | None = None
    failure_reason: str | None = None
    transfer_success: bool | None = None
    metrics: TransferMetrics = Field(default_factory=TransferMetrics)
    
    @property
    def is_terminal(self) -> bool:
        return self.status in (
            TransferStatus.DECLINED,
            TransferStatus.COMPLETED,
            TransferStatus.FAILED,
        )
