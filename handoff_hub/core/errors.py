"""
Error taxonomy for the handoff core.
Every error carries a stable ``code`` used by the HTTP and WebSocket surfaces.
"""


class HandoffError(Exception):
    """Base class for handoff errors."""
    
    code = "handoff_error"
    
    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code


class ValidationError(HandoffError):
    """Malformed input."""
    
    code = "validation_error"


class InvalidTransitionError(ValidationError):
    """A state change not allowed by the transition tables."""
    
    code = "invalid_transition"


class NotFoundError(HandoffError):
    """Unknown session, agent or transfer, or a transfer already resolved."""
    
    code = "not_found"


class CapacityExceeded(HandoffError):
    """Agent has no free chat slot (lost a capacity race)."""
    
    code = "capacity_exceeded"


class Unauthorized(HandoffError):
    """Unauthenticated or mis-scoped traffic."""
    
    code = "unauthorized"


class NoAgentsAvailable(HandoffError):
    """No candidate agent could take the session."""
    
    code = "no_agents_available"


class StoreError(HandoffError):
    """Persistence adapter failure, retried once by callers."""
    
    code = "store_error"


class OrchestratorError(HandoffError):
    """Persistence failure that survived the retry."""
    
    code = "orchestrator_error"
