"""API routes."""

from handoff_hub.api.routes.agents import router as agents_router
from handoff_hub.api.routes.realtime import router as realtime_router
from handoff_hub.api.routes.sessions import router as sessions_router
from handoff_hub.api.routes.transfers import router as transfers_router

__all__ = ["agents_router", "realtime_router", "sessions_router", "transfers_router"]
