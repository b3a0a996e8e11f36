"""
Agent routes: directory administration and the agent's own workspace.
Routes under ``/agents/me`` authenticate with an agent bearer token.
"""

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from handoff_hub.api.dependencies import (
    HandoffServices,
    current_agent_id,
    get_authenticator,
    get_directory,
    get_orchestrator,
    get_services,
    require_api_key,
)
from handoff_hub.core.directory import AgentDirectory
from handoff_hub.core.handoff import TransferOrchestrator
from handoff_hub.core.realtime import AgentAuthenticator
from handoff_hub.models import (
    Agent,
    AgentRole,
    AgentSkill,
    AgentStatus,
    ChatSession,
    Transfer,
    TransferContext,
    TransferPriority,
    TransferReason,
    TransferRequestResult,
)

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/agents", tags=["Agents"])


# Request/Response Models
class RegisterAgentRequest(BaseModel):
    """New agent for the directory."""
    
    id: str = Field(min_length=1, max_length=64)
    name: str = Field(min_length=1, max_length=100)
    email: str | None = None
    department: str = "general"
    role: AgentRole = AgentRole.AGENT
    status: AgentStatus = AgentStatus.OFFLINE
    max_concurrent_chats: int = Field(default=3, ge=1, le=10)
    skills: list[AgentSkill] = Field(default_factory=list)


class TokenResponse(BaseModel):
    agent_id: str
    token: str
    expires_in: int


class CapacityRequest(BaseModel):
    max_concurrent_chats: int = Field(ge=1, le=10)


class StatusRequest(BaseModel):
    status: AgentStatus


class EndSessionRequest(BaseModel):
    satisfaction: float | None = Field(default=None, ge=1, le=5)
    closing_message: str | None = Field(default=None, max_length=2000)


class AgentTransferRequest(BaseModel):
    """Hand a session the agent holds to another agent."""
    
    reason: TransferReason = TransferReason.SKILL_MISMATCH
    priority: TransferPriority = TransferPriority.MEDIUM
    preferred_agent_id: str | None = None
    context: TransferContext | None = None


class PendingTransfersResponse(BaseModel):
    transfers: list[Transfer]
    count: int


@router.post("", response_model=Agent, status_code=201, dependencies=[Depends(require_api_key)])
async def register_agent(
    request: RegisterAgentRequest,
    directory: AgentDirectory = Depends(get_directory),
) -> Agent:
    return await directory.register_agent(Agent(**request.model_dump()))


@router.get("", response_model=list[Agent], dependencies=[Depends(require_api_key)])
async def list_agents(
    status: AgentStatus | None = Query(default=None),
    department: str | None = Query(default=None),
    directory: AgentDirectory = Depends(get_directory),
) -> list[Agent]:
    return directory.list_agents(status=status, department=department)


@router.get("/stats", dependencies=[Depends(require_api_key)])
async def system_stats(services: HandoffServices = Depends(get_services)) -> dict:
    """Agents, workload, pending transfers, queue depth and live connections."""
    stats = await services.orchestrator.system_stats()
    stats["connections"] = services.delivery.connection_stats()
    return stats


# Agent workspace (bearer token)
@router.get("/me/pending-transfers", response_model=PendingTransfersResponse)
async def pending_transfers(
    agent_id: str = Depends(current_agent_id),
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> PendingTransfersResponse:
    transfers = await orchestrator.get_pending_transfers(agent_id)
    return PendingTransfersResponse(transfers=transfers, count=len(transfers))


@router.put("/me/status", response_model=Agent)
async def update_status(
    request: StatusRequest,
    agent_id: str = Depends(current_agent_id),
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> Agent:
    return await orchestrator.set_agent_status(agent_id, request.status)


@router.post("/me/sessions/{session_id}/end", response_model=ChatSession)
async def end_session(
    session_id: str,
    request: EndSessionRequest,
    agent_id: str = Depends(current_agent_id),
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> ChatSession:
    return await orchestrator.end_session(
        session_id,
        agent_id,
        satisfaction=request.satisfaction,
        closing_message=request.closing_message,
    )


@router.post("/me/sessions/{session_id}/transfer", response_model=TransferRequestResult)
async def transfer_session(
    session_id: str,
    request: AgentTransferRequest,
    agent_id: str = Depends(current_agent_id),
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> TransferRequestResult:
    return await orchestrator.request_transfer(
        session_id,
        request.reason,
        request.priority,
        preferred_agent_id=request.preferred_agent_id,
        from_agent_id=agent_id,
        context=request.context,
    )


@router.get("/me/performance")
async def performance(
    days: int = Query(default=7, ge=1, le=90),
    agent_id: str = Depends(current_agent_id),
    directory: AgentDirectory = Depends(get_directory),
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> dict:
    agent = directory.get_agent(agent_id)
    return {
        "agent": {
            "id": agent.id,
            "name": agent.name,
            "status": agent.status.value,
            "current_chat_count": agent.current_chat_count,
            "max_concurrent_chats": agent.max_concurrent_chats,
        },
        "performance": {
            "total_chats_handled": agent.total_chats_handled,
            "average_response_time": agent.average_response_time,
            "average_satisfaction": agent.average_satisfaction,
            "total_ratings": agent.total_ratings,
        },
        "transfers": await orchestrator.transfer_stats(agent_id, days),
    }


# Directory admin
@router.get("/{agent_id}", response_model=Agent, dependencies=[Depends(require_api_key)])
async def get_agent(agent_id: str, directory: AgentDirectory = Depends(get_directory)) -> Agent:
    return directory.get_agent(agent_id)


@router.post("/{agent_id}/token", response_model=TokenResponse, dependencies=[Depends(require_api_key)])
async def issue_token(
    agent_id: str,
    directory: AgentDirectory = Depends(get_directory),
    authenticator: AgentAuthenticator = Depends(get_authenticator),
) -> TokenResponse:
    directory.get_agent(agent_id)
    logger.info("agent_token_issued", agent_id=agent_id)
    return TokenResponse(
        agent_id=agent_id,
        token=authenticator.issue_token(agent_id),
        expires_in=authenticator.ttl_seconds,
    )


@router.put("/{agent_id}/capacity", response_model=Agent, dependencies=[Depends(require_api_key)])
async def update_capacity(
    agent_id: str,
    request: CapacityRequest,
    directory: AgentDirectory = Depends(get_directory),
) -> Agent:
    return await directory.update_capacity(agent_id, request.max_concurrent_chats)
