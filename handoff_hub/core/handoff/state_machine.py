"""
Transition tables for transfer status and session stage.
Both tables must cover every enum member; this is checked at import time.
"""

from enum import Enum

from handoff_hub.core.errors import InvalidTransitionError
from handoff_hub.models import SessionStage, TransferStatus

TRANSFER_TRANSITIONS: dict[TransferStatus, frozenset[TransferStatus]] = {
    TransferStatus.PENDING: frozenset({
        TransferStatus.ACCEPTED,
        TransferStatus.DECLINED,
        TransferStatus.FAILED,
    }),
    TransferStatus.ACCEPTED: frozenset({TransferStatus.COMPLETED}),
    TransferStatus.DECLINED: frozenset(),
    TransferStatus.COMPLETED: frozenset(),
    TransferStatus.FAILED: frozenset(),
}

SESSION_TRANSITIONS: dict[SessionStage, frozenset[SessionStage]] = {
    SessionStage.COLLECTING_DETAILS: frozenset({
        SessionStage.AI_HANDLING,
        SessionStage.HUMAN_AGENT,
        SessionStage.AI_FALLBACK,
        SessionStage.COMPLETED,
    }),
    SessionStage.AI_HANDLING: frozenset({
        SessionStage.HUMAN_AGENT,
        SessionStage.AI_FALLBACK,
        SessionStage.COMPLETED,
    }),
    # human_agent -> human_agent is an agent-to-agent transfer
    SessionStage.HUMAN_AGENT: frozenset({
        SessionStage.HUMAN_AGENT,
        SessionStage.AI_FALLBACK,
        SessionStage.COMPLETED,
    }),
    SessionStage.AI_FALLBACK: frozenset({
        SessionStage.AI_FALLBACK,
        SessionStage.AI_HANDLING,
        SessionStage.HUMAN_AGENT,
        SessionStage.COMPLETED,
    }),
    SessionStage.COMPLETED: frozenset(),
}


def _check_exhaustive(table: dict, enum_type: type[Enum]) -> None:
    missing = set(enum_type) - set(table)
    if missing:
        raise RuntimeError(
            f"{enum_type.__name__} transition table is missing {sorted(m.value for m in missing)}"
        )


_check_exhaustive(TRANSFER_TRANSITIONS, TransferStatus)
_check_exhaustive(SESSION_TRANSITIONS, SessionStage)


def can_transition_transfer(current: TransferStatus, target: TransferStatus) -> bool:
    return target in TRANSFER_TRANSITIONS[current]


def ensure_transfer_transition(current: TransferStatus, target: TransferStatus) -> None:
    if not can_transition_transfer(current, target):
        raise InvalidTransitionError(
            f"Transfer cannot move from {current.value} to {target.value}"
        )


def can_transition_session(current: SessionStage, target: SessionStage) -> bool:
    return target in SESSION_TRANSITIONS[current]


def ensure_session_transition(current: SessionStage, target: SessionStage) -> None:
    if not can_transition_session(current, target):
        raise InvalidTransitionError(
            f"Session cannot move from {current.value} to {target.value}"
        )
