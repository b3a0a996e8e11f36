"""
Transfer routes: requesting handoffs and driving the transfer state machine.
"""

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from handoff_hub.api.dependencies import current_agent_id, get_orchestrator, require_api_key
from handoff_hub.core.handoff import QueuedSession, TransferOrchestrator
from handoff_hub.models import (
    AcceptResult,
    DeclineResult,
    Transfer,
    TransferContext,
    TransferPriority,
    TransferReason,
    TransferRequestResult,
    TransferTrigger,
)

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/transfers", tags=["Transfers"])


# Request/Response Models
class TransferRequest(BaseModel):
    """Handoff request from the AI responder."""
    
    session_id: str
    reason: TransferReason
    priority: TransferPriority = TransferPriority.MEDIUM
    trigger: TransferTrigger = TransferTrigger.MANUAL
    exclude_agent_id: str | None = None
    preferred_agent_id: str | None = None
    context: TransferContext | None = None


class AcceptTransferRequest(BaseModel):
    handoff_message: str | None = Field(default=None, max_length=2000)


class DeclineTransferRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class CompleteTransferRequest(BaseModel):
    success: bool = True


class CancelTransferRequest(BaseModel):
    reason: str = Field(default="cancelled", max_length=200)


class QueueResponse(BaseModel):
    """Waiting sessions in queue order."""
    
    entries: list[QueuedSession]
    total: int
    by_priority: dict[str, int]
    avg_wait_seconds: float


@router.post("", response_model=TransferRequestResult, dependencies=[Depends(require_api_key)])
async def request_transfer(
    request: TransferRequest,
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> TransferRequestResult:
    """
    Hand a session to a human agent.
    
    Returns ``assigned`` with the offered agent, or ``queued`` with the
    queue position when no agent can take the session yet.
    """
    return await orchestrator.request_transfer(
        request.session_id,
        request.reason,
        request.priority,
        exclude_agent_id=request.exclude_agent_id,
        preferred_agent_id=request.preferred_agent_id,
        trigger=request.trigger,
        context=request.context,
    )


@router.get("/queue", response_model=QueueResponse, dependencies=[Depends(require_api_key)])
async def get_queue(orchestrator: TransferOrchestrator = Depends(get_orchestrator)) -> QueueResponse:
    stats = orchestrator.queue.get_stats()
    return QueueResponse(entries=orchestrator.queue.entries(), **stats)


@router.post("/maintenance", dependencies=[Depends(require_api_key)])
async def run_maintenance(orchestrator: TransferOrchestrator = Depends(get_orchestrator)) -> dict:
    """Fail stale offers and offer queued sessions to free agents."""
    return await orchestrator.run_maintenance()


@router.get("/{transfer_id}", response_model=Transfer, dependencies=[Depends(require_api_key)])
async def get_transfer(
    transfer_id: str,
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> Transfer:
    return await orchestrator.get_transfer(transfer_id)


@router.post("/{transfer_id}/accept", response_model=AcceptResult)
async def accept_transfer(
    transfer_id: str,
    request: AcceptTransferRequest,
    agent_id: str = Depends(current_agent_id),
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> AcceptResult:
    return await orchestrator.accept_transfer(transfer_id, agent_id, request.handoff_message)


@router.post("/{transfer_id}/decline", response_model=DeclineResult)
async def decline_transfer(
    transfer_id: str,
    request: DeclineTransferRequest,
    agent_id: str = Depends(current_agent_id),
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> DeclineResult:
    return await orchestrator.decline_transfer(transfer_id, agent_id, request.reason)


@router.post("/{transfer_id}/complete", response_model=Transfer, dependencies=[Depends(require_api_key)])
async def complete_transfer(
    transfer_id: str,
    request: CompleteTransferRequest,
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> Transfer:
    return await orchestrator.complete_transfer(transfer_id, request.success)


@router.post("/{transfer_id}/cancel", response_model=Transfer, dependencies=[Depends(require_api_key)])
async def cancel_transfer(
    transfer_id: str,
    request: CancelTransferRequest,
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> Transfer:
    logger.info("transfer_cancel_requested", transfer_id=transfer_id, reason=request.reason)
    return await orchestrator.cancel_transfer(transfer_id, request.reason)
