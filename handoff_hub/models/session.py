"""
Chat session models.
Sessions are owned by the session store; the orchestrator only changes
assignment, stage and escalation through the store interface.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from handoff_hub.models.transfer import TransferPriority
from handoff_hub.utils import utcnow


class SessionStage(str, Enum):
    """Coarse phase of a support conversation."""
    
    COLLECTING_DETAILS = "collecting_details"
    AI_HANDLING = "ai_handling"
    HUMAN_AGENT = "human_agent"
    AI_FALLBACK = "ai_fallback"
    COMPLETED = "completed"


class MessageRole(str, Enum):
    """Author of a conversation message."""
    
    USER = "user"
    ASSISTANT = "assistant"
    AGENT = "agent"
    SYSTEM = "system"


class ConversationMessage(BaseModel):
    """Single entry of a session history."""
    
    role: MessageRole
    message: str
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChatSession(BaseModel):
    """One customer support conversation thread."""
    
    session_id: str = Field(default_factory=lambda: str(uuid4()))
    customer_name: str
    service_type: str
    assigned_agent_id: str | None = None
    stage: SessionStage = SessionStage.AI_HANDLING
    conversation_history: list[ConversationMessage] = Field(default_factory=list)
    
    # Escalation flag set when no human could take the session
    escalated: bool = False
    escalation_priority: TransferPriority | None = None
    
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    
    def last_message(self, role: MessageRole | None = None) -> ConversationMessage | None:
        for entry in reversed(self.conversation_history):
            if role is None or entry.role == role:
                return entry
        return None
