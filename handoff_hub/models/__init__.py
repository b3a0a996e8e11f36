"""Data models for the handoff system."""

from handoff_hub.models.agent import (
    ActiveChat,
    Agent,
    AgentRole,
    AgentSkill,
    AgentStatus,
    AgentSummary,
    Proficiency,
)
from handoff_hub.models.results import AcceptResult, DeclineResult, TransferRequestResult
from handoff_hub.models.session import (
    ChatSession,
    ConversationMessage,
    MessageRole,
    SessionStage,
)
from handoff_hub.models.transfer import (
    AgentResponse,
    SnapshotMessage,
    Transfer,
    TransferContext,
    TransferMetrics,
    TransferPriority,
    TransferReason,
    TransferSource,
    TransferStatus,
    TransferTrigger,
)

__all__ = [
    # Agent models
    "ActiveChat",
    "Agent",
    "AgentRole",
    "AgentSkill",
    "AgentStatus",
    "AgentSummary",
    "Proficiency",
    # Session models
    "ChatSession",
    "ConversationMessage",
    "MessageRole",
    "SessionStage",
    # Transfer models
    "AgentResponse",
    "SnapshotMessage",
    "Transfer",
    "TransferContext",
    "TransferMetrics",
    "TransferPriority",
    "TransferReason",
    "TransferSource",
    "TransferStatus",
    "TransferTrigger",
    # Results
    "AcceptResult",
    "DeclineResult",
    "TransferRequestResult",
]
