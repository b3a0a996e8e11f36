"""Real-time delivery: connection registries, agent credentials and routing."""

from handoff_hub.core.realtime.auth import AgentAuthenticator
from handoff_hub.core.realtime.connection_registry import ClientConnection, ConnectionRegistry
from handoff_hub.core.realtime.delivery import DeliveryLayer
from handoff_hub.core.realtime.transfer_actions import register_transfer_actions

__all__ = [
    "AgentAuthenticator",
    "ClientConnection",
    "ConnectionRegistry",
    "DeliveryLayer",
    "register_transfer_actions",
]
