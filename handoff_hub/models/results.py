"""Result objects returned by orchestrator operations."""

from typing import Literal

from pydantic import BaseModel

from handoff_hub.models.agent import AgentSummary
from handoff_hub.models.transfer import Transfer


class TransferRequestResult(BaseModel):
    """Outcome of a handoff request: offered to an agent or queued."""
    
    status: Literal["assigned", "queued"]
    session_id: str
    transfer_id: str | None = None
    agent: AgentSummary | None = None
    estimated_wait_seconds: int
    queue_position: int | None = None


class AcceptResult(BaseModel):
    """Outcome of an accepted transfer."""
    
    transfer: Transfer
    agent: AgentSummary


class DeclineResult(BaseModel):
    """Outcome of a declined or abandoned transfer.
    
    Exactly one of ``rerouted`` and ``escalated`` is true.
    """
    
    transfer_id: str
    rerouted: bool
    escalated: bool
    new_transfer_id: str | None = None
    new_agent_id: str | None = None
