"""
Waiting queue for sessions no agent could take yet.
Ordered by priority (urgent first) then queue time; drained by reconciliation.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from handoff_hub.models import (
    TransferContext,
    TransferPriority,
    TransferReason,
    TransferSource,
)
from handoff_hub.utils import utcnow
from handoff_hub.utils.metrics import QUEUE_DEPTH


class QueuedSession(BaseModel):
    """A handoff request waiting for capacity."""
    
    session_id: str
    reason: TransferReason
    priority: TransferPriority = TransferPriority.MEDIUM
    from_type: TransferSource = TransferSource.AI
    from_agent_id: str | None = None
    context: TransferContext | None = None
    reroute_count: int = 0
    queued_at: datetime = Field(default_factory=utcnow)
    
    # Queue info
    queue_position: int | None = None
    estimated_wait_seconds: int | None = None


class WaitingQueue:
    """
    Priority queue of waiting sessions.
    One entry per session; re-adding keeps the earlier queue time and the
    higher priority.
    """
    
    def __init__(self, wait_step_seconds: int = 30) -> None:
        self.wait_step_seconds = wait_step_seconds
        self._queue: list[QueuedSession] = []
    
    def add(self, entry: QueuedSession) -> int:
        """Add or refresh a session; returns its queue position."""
        existing = self.get(entry.session_id)
        if existing:
            self._queue.remove(existing)
            entry.queued_at = min(existing.queued_at, entry.queued_at)
            if existing.priority.rank > entry.priority.rank:
                entry.priority = existing.priority
        
        self._queue.append(entry)
        self._reorder()
        return entry.queue_position
    
    def get(self, session_id: str) -> QueuedSession | None:
        return next((e for e in self._queue if e.session_id == session_id), None)
    
    def remove(self, session_id: str) -> bool:
        entry = self.get(session_id)
        if entry is None:
            return False
        self._queue.remove(entry)
        self._reorder()
        return True
    
    def entries(self) -> list[QueuedSession]:
        return [entry.model_copy() for entry in self._queue]
    
    @property
    def size(self) -> int:
        return len(self._queue)
    
    def get_stats(self) -> dict:
        if not self._queue:
            return {"total": 0, "by_priority": {}, "avg_wait_seconds": 0}
        
        by_priority: dict[str, int] = {}
        for entry in self._queue:
            by_priority[entry.priority.value] = by_priority.get(entry.priority.value, 0) + 1
        
        return {
            "total": len(self._queue),
            "by_priority": by_priority,
            "avg_wait_seconds": sum(e.estimated_wait_seconds or 0 for e in self._queue) / len(self._queue),
        }
    
    def _reorder(self) -> None:
        self._queue.sort(key=lambda e: (-e.priority.rank, e.queued_at))
        for i, item in enumerate(self._queue):
            item.queue_position = i + 1
            item.estimated_wait_seconds = item.queue_position * self.wait_step_seconds
        QUEUE_DEPTH.set(len(self._queue))
