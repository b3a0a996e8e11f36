"""
Service wiring and dependencies injected into routes.
Components are built once per application and kept on ``app.state``.
"""

import hmac
from dataclasses import dataclass

from fastapi import Header, Request

from handoff_hub.config import Settings
from handoff_hub.core.directory import AgentDirectory
from handoff_hub.core.errors import NotFoundError, Unauthorized
from handoff_hub.core.handoff import HandoffNotifier, TransferOrchestrator
from handoff_hub.core.realtime import AgentAuthenticator, DeliveryLayer, register_transfer_actions
from handoff_hub.services.store import (
    AgentRepository,
    InMemoryAgentRepository,
    InMemorySessionStore,
    InMemoryTransferRepository,
    SessionStore,
    TransferRepository,
)


@dataclass
class HandoffServices:
    """Everything the HTTP and WebSocket surfaces talk to."""
    
    settings: Settings
    sessions: SessionStore
    directory: AgentDirectory
    orchestrator: TransferOrchestrator
    delivery: DeliveryLayer
    authenticator: AgentAuthenticator


def build_services(
    settings: Settings,
    *,
    sessions: SessionStore | None = None,
    agents: AgentRepository | None = None,
    transfers: TransferRepository | None = None,
) -> HandoffServices:
    """Wire the directory, orchestrator and delivery layer over the given stores."""
    handoff = settings.handoff
    sessions = sessions or InMemorySessionStore()
    
    directory = AgentDirectory(
        agents or InMemoryAgentRepository(),
        default_response_time_seconds=handoff.default_response_time_seconds,
        retry_delay_seconds=handoff.persistence_retry_delay_seconds,
    )
    authenticator = AgentAuthenticator(
        settings.realtime.agent_token_secret,
        settings.realtime.agent_token_ttl_seconds,
    )
    delivery = DeliveryLayer(
        sessions,
        authenticator,
        directory=directory,
        retry_delay_seconds=handoff.persistence_retry_delay_seconds,
    )
    notifier = HandoffNotifier(
        channel=delivery,
        webhooks=handoff.webhook_urls,
        webhook_timeout_seconds=handoff.webhook_timeout_seconds,
    )
    orchestrator = TransferOrchestrator(
        directory,
        sessions,
        transfers or InMemoryTransferRepository(),
        notifier=notifier,
        settings=handoff,
    )
    register_transfer_actions(delivery, orchestrator)
    
    return HandoffServices(
        settings=settings,
        sessions=sessions,
        directory=directory,
        orchestrator=orchestrator,
        delivery=delivery,
        authenticator=authenticator,
    )


def get_services(request: Request) -> HandoffServices:
    return request.app.state.services


def get_orchestrator(request: Request) -> TransferOrchestrator:
    return request.app.state.services.orchestrator


def get_directory(request: Request) -> AgentDirectory:
    return request.app.state.services.directory


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.services.sessions


def get_authenticator(request: Request) -> AgentAuthenticator:
    return request.app.state.services.authenticator


def require_api_key(
    request: Request,
    x_api_key: str | None = Header(default=None),
) -> None:
    """Guard caller and admin routes when an API key is configured."""
    expected = request.app.state.services.settings.api.api_key
    if expected and not hmac.compare_digest(x_api_key or "", expected):
        raise Unauthorized("Invalid or missing API key")


def current_agent_id(
    request: Request,
    authorization: str | None = Header(default=None),
) -> str:
    """Agent id from an ``Authorization: Bearer <token>`` header."""
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise Unauthorized("Missing bearer credential")
    
    services: HandoffServices = request.app.state.services
    agent_id = services.authenticator.verify(token)
    try:
        services.directory.get_agent(agent_id)
    except NotFoundError as e:
        raise Unauthorized(f"Unknown agent: {agent_id}") from e
    return agent_id
