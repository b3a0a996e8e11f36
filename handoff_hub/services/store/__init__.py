"""Persistence interfaces and in-memory adapters."""

from handoff_hub.services.store.base import (
    AgentRepository,
    SessionStore,
    TransferRepository,
)
from handoff_hub.services.store.memory import (
    InMemoryAgentRepository,
    InMemorySessionStore,
    InMemoryTransferRepository,
)
from handoff_hub.services.store.retry import call_with_retry

__all__ = [
    "AgentRepository",
    "InMemoryAgentRepository",
    "InMemorySessionStore",
    "InMemoryTransferRepository",
    "SessionStore",
    "TransferRepository",
    "call_with_retry",
]
