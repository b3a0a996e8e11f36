"""Handoff module: transfer state machine, waiting queue and notifications."""

from handoff_hub.core.handoff.context_builder import TransferContextBuilder
from handoff_hub.core.handoff.notifier import HandoffNotifier, LiveChannel
from handoff_hub.core.handoff.transfer_orchestrator import TransferOrchestrator
from handoff_hub.core.handoff.waiting_queue import QueuedSession, WaitingQueue

__all__ = [
    "HandoffNotifier",
    "LiveChannel",
    "QueuedSession",
    "TransferContextBuilder",
    "TransferOrchestrator",
    "WaitingQueue",
]
