"""
Transfer context builder tests.
"""

import pytest

from handoff_hub.core.errors import ValidationError
from handoff_hub.core.handoff import TransferContextBuilder
from handoff_hub.models import (
    ChatSession,
    ConversationMessage,
    MessageRole,
    TransferContext,
    TransferPriority,
    TransferReason,
)


@pytest.fixture
def session() -> ChatSession:
    history = [
        ConversationMessage(role=MessageRole.USER, message="My checkout page is broken"),
        ConversationMessage(role=MessageRole.ASSISTANT, message="Can you describe the error?"),
        ConversationMessage(role=MessageRole.USER, message="Payments time out"),
        ConversationMessage(role=MessageRole.ASSISTANT, message="Let me get a specialist"),
    ]
    return ChatSession(
        customer_name="Ana",
        service_type="web_development",
        conversation_history=history,
    )


class TestSnapshot:

    def test_keeps_last_messages_in_order(self, session):
        builder = TransferContextBuilder(snapshot_size=3)
        
        snapshot = builder.snapshot(session)
        
        assert [m.message for m in snapshot] == [
            "Can you describe the error?",
            "Payments time out",
            "Let me get a specialist",
        ]
        assert snapshot[0].role == "assistant"

    def test_short_history_is_copied_whole(self, session):
        assert len(TransferContextBuilder(snapshot_size=10).snapshot(session)) == 4


class TestBuild:

    def test_generated_context(self, session):
        context = TransferContextBuilder().build(
            session, TransferReason.AI_ESCALATION, TransferPriority.HIGH
        )
        
        assert context.customer_issue == "Payments time out"
        assert context.urgency_level == TransferPriority.HIGH
        assert context.ai_confidence == 0.4
        assert "web development" in context.summary
        assert "My checkout page is broken" in context.summary

    def test_supplied_fields_win(self, session):
        context = TransferContextBuilder().build(
            session,
            TransferReason.CUSTOMER_REQUEST,
            TransferPriority.MEDIUM,
            {"summary": "VIP customer", "ai_confidence": 0.9},
        )
        
        assert context.summary == "VIP customer"
        assert context.ai_confidence == 0.9
        assert context.customer_issue == "Payments time out"

    def test_accepts_model_instance(self, session):
        supplied = TransferContext(special_instructions="Call back")
        
        context = TransferContextBuilder().build(
            session, TransferReason.EMERGENCY, TransferPriority.URGENT, supplied
        )
        
        assert context.special_instructions == "Call back"
        assert context.urgency_level == TransferPriority.URGENT
        assert supplied.urgency_level == TransferPriority.MEDIUM

    def test_invalid_context_rejected(self, session):
        with pytest.raises(ValidationError):
            TransferContextBuilder().build(
                session,
                TransferReason.CUSTOMER_REQUEST,
                TransferPriority.MEDIUM,
                {"ai_confidence": 7},
            )
