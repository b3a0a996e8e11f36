"""
Transfer context builder.
Produces the summary and conversation snapshot handed to the receiving agent.
"""

from typing import Any

import pydantic
import structlog

from handoff_hub.core.errors import ValidationError
from handoff_hub.models import (
    ChatSession,
    MessageRole,
    SnapshotMessage,
    TransferContext,
    TransferPriority,
    TransferReason,
)

logger = structlog.get_logger(__name__)

REASON_DESCRIPTIONS = {
    TransferReason.CUSTOMER_REQUEST: "Customer explicitly requested human assistance",
    TransferReason.AI_ESCALATION: "AI detected complexity requiring human expertise",
    TransferReason.COMPLEXITY_ESCALATION: "Query complexity exceeds assistant scope",
    TransferReason.SKILL_MISMATCH: "Current responder lacks the required skill",
    TransferReason.TECHNICAL_ISSUE: "Technical issue reported by the customer",
    TransferReason.AGENT_UNAVAILABLE: "Previous agent became unavailable",
    TransferReason.WORKLOAD_BALANCE: "Rebalancing agent workload",
    TransferReason.EMERGENCY: "Emergency flagged on the conversation",
}

# Confidence signal assumed when the caller does not supply one
DEFAULT_CONFIDENCE = {
    TransferReason.CUSTOMER_REQUEST: 0.2,
    TransferReason.AI_ESCALATION: 0.4,
    TransferReason.COMPLEXITY_ESCALATION: 0.4,
}


class TransferContextBuilder:
    """Builds transfer context and conversation snapshots from a session."""
    
    def __init__(self, snapshot_size: int = 10) -> None:
        self.snapshot_size = snapshot_size
    
    def snapshot(self, session: ChatSession) -> list[SnapshotMessage]:
        """Last N messages of the conversation, oldest first."""
        recent = session.conversation_history[-self.snapshot_size:]
        return [
            SnapshotMessage(
                role=entry.role.value,
                message=entry.message,
                timestamp=entry.timestamp,
            )
            for entry in recent
        ]
    
    def build(
        self,
        session: ChatSession,
        reason: TransferReason,
        priority: TransferPriority,
        supplied: TransferContext | dict[str, Any] | None = None,
    ) -> TransferContext:
        """Merge caller-supplied context with what the session already tells us."""
        if isinstance(supplied, dict):
            try:
                supplied = TransferContext(**supplied)
            except pydantic.ValidationError as e:
                raise ValidationError(f"Invalid transfer context: {e}") from e
        
        last_user = session.last_message(MessageRole.USER)
        fields_set = supplied.model_fields_set if supplied else set()
        
        context = supplied.model_copy() if supplied else TransferContext()
        if "summary" not in fields_set:
            context.summary = self._summarize(session, reason)
        if "customer_issue" not in fields_set:
            context.customer_issue = last_user.message if last_user else None
        if "urgency_level" not in fields_set:
            context.urgency_level = priority
        if "ai_confidence" not in fields_set:
            context.ai_confidence = DEFAULT_CONFIDENCE.get(reason, 0.0)
        
        return context
    
    def _summarize(self, session: ChatSession, reason: TransferReason) -> str:
        user_turns = [m for m in session.conversation_history if m.role == MessageRole.USER]
        summary = (
            f"{REASON_DESCRIPTIONS[reason]}. {session.customer_name} needs help with "
            f"{session.service_type.replace('_', ' ')} after {len(user_turns)} customer messages."
        )
        if user_turns:
            summary += f' Opening request: "{user_turns[0].message[:160]}"'
        return summary
