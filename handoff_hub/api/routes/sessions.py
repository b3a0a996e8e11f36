"""
Session routes used by the AI responder and the customer widget.
"""

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, field_validator

from handoff_hub.api.dependencies import get_orchestrator, get_session_store, require_api_key
from handoff_hub.core.errors import NotFoundError
from handoff_hub.core.handoff import TransferOrchestrator
from handoff_hub.models import ChatSession, ConversationMessage, MessageRole, SessionStage
from handoff_hub.services.store import SessionStore, call_with_retry

logger = structlog.get_logger(__name__)
router = APIRouter(prefix="/sessions", tags=["Sessions"])


class CreateSessionRequest(BaseModel):
    """Open a new support conversation."""
    
    customer_name: str = Field(min_length=1, max_length=100)
    service_type: str = Field(min_length=1, max_length=64)
    stage: SessionStage = SessionStage.AI_HANDLING
    initial_message: str | None = Field(default=None, max_length=5000)
    
    @field_validator("stage")
    @classmethod
    def check_opening_stage(cls, v: SessionStage) -> SessionStage:
        if v not in (SessionStage.COLLECTING_DETAILS, SessionStage.AI_HANDLING):
            raise ValueError("sessions open in collecting_details or ai_handling")
        return v


class AppendMessageRequest(BaseModel):
    """Message written by the AI responder or relayed from the customer."""
    
    role: MessageRole = MessageRole.USER
    message: str = Field(min_length=1, max_length=5000)
    metadata: dict = Field(default_factory=dict)
    
    @field_validator("role")
    @classmethod
    def check_role(cls, v: MessageRole) -> MessageRole:
        if v not in (MessageRole.USER, MessageRole.ASSISTANT):
            raise ValueError("only user and assistant messages can be appended here")
        return v


@router.post("", response_model=ChatSession, status_code=201, dependencies=[Depends(require_api_key)])
async def create_session(
    request: CreateSessionRequest,
    store: SessionStore = Depends(get_session_store),
) -> ChatSession:
    session = ChatSession(
        customer_name=request.customer_name,
        service_type=request.service_type,
        stage=request.stage,
    )
    await call_with_retry(lambda: store.save_session(session), description="save_session")
    if request.initial_message:
        await call_with_retry(
            lambda: store.append_message(session.session_id, MessageRole.USER, request.initial_message),
            description="append_message",
        )
    
    logger.info("session_created", session_id=session.session_id, service_type=session.service_type)
    return await store.find_session(session.session_id)


@router.get("/availability")
async def get_availability(
    service_type: str | None = Query(default=None),
    orchestrator: TransferOrchestrator = Depends(get_orchestrator),
) -> dict:
    """Whether a human agent can take a new conversation right now."""
    return orchestrator.availability(service_type)


@router.get("/{session_id}", response_model=ChatSession, dependencies=[Depends(require_api_key)])
async def get_session(
    session_id: str,
    store: SessionStore = Depends(get_session_store),
) -> ChatSession:
    session = await call_with_retry(lambda: store.find_session(session_id), description="find_session")
    if session is None:
        raise NotFoundError(f"Session not found: {session_id}")
    return session


@router.post(
    "/{session_id}/messages",
    response_model=ConversationMessage,
    status_code=201,
    dependencies=[Depends(require_api_key)],
)
async def append_message(
    session_id: str,
    request: AppendMessageRequest,
    store: SessionStore = Depends(get_session_store),
) -> ConversationMessage:
    return await call_with_retry(
        lambda: store.append_message(session_id, request.role, request.message, request.metadata),
        description="append_message",
    )
