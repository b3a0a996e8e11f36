"""Inbound wire payloads. Frames use camelCase keys."""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from handoff_hub.models import AgentStatus


class WirePayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AuthenticatePayload(WirePayload):
    user_type: Literal["agent", "customer"]
    session_id: str | None = None
    credential: str | None = None


class ChatMessagePayload(WirePayload):
    session_id: str | None = None
    message: str = Field(min_length=1, max_length=5000)
    message_type: str = "text"


class TypingPayload(WirePayload):
    session_id: str | None = None
    is_typing: bool = True


class StatusUpdatePayload(WirePayload):
    status: AgentStatus


class TransferActionPayload(WirePayload):
    transfer_id: str
    handoff_message: str | None = None
    reason: str | None = None
