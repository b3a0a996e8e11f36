"""
Transfer Orchestrator - moves sessions between the AI assistant and human agents.

Every transfer mutation for one session runs under that session's lock, so a
session never has more than one pending transfer and a transfer is resolved
at most once. Capacity is enforced by the AgentDirectory; an outstanding
offer holds one slot on its target agent until it is accepted or resolved.
"""

import asyncio
from datetime import timedelta
from typing import Any

import structlog

from handoff_hub.config import HandoffSettings, get_settings
from handoff_hub.core.directory import AgentDirectory
from handoff_hub.core.errors import (
    CapacityExceeded,
    HandoffError,
    NoAgentsAvailable,
    NotFoundError,
    Unauthorized,
    ValidationError,
)
from handoff_hub.core.handoff.context_builder import TransferContextBuilder
from handoff_hub.core.handoff.notifier import HandoffNotifier
from handoff_hub.core.handoff.state_machine import (
    ensure_session_transition,
    ensure_transfer_transition,
)
from handoff_hub.core.handoff.waiting_queue import QueuedSession, WaitingQueue
from handoff_hub.models import (
    AcceptResult,
    ActiveChat,
    Agent,
    AgentResponse,
    AgentStatus,
    AgentSummary,
    ChatSession,
    DeclineResult,
    MessageRole,
    SessionStage,
    SnapshotMessage,
    Transfer,
    TransferContext,
    TransferPriority,
    TransferReason,
    TransferRequestResult,
    TransferSource,
    TransferStatus,
    TransferTrigger,
)
from handoff_hub.services.store import SessionStore, TransferRepository, call_with_retry
from handoff_hub.utils import KeyedLock, utcnow
from handoff_hub.utils.metrics import TRANSFER_EVENTS

logger = structlog.get_logger(__name__)

ESCALATION_MESSAGE = (
    "I apologize, but all our human agents are currently busy. I've flagged your case "
    "as high priority and I'll keep helping you in the meantime."
)
FALLBACK_MESSAGE = (
    "I'm back to help you! Our agent had to step away, but I have the full context of "
    "our conversation. How can I continue helping you?"
)
QUEUED_MESSAGE = (
    "All our agents are helping other customers right now. You're number {position} in "
    "line and we'll connect you as soon as someone is free."
)
HANDOFF_GREETING = (
    "Hi {customer}! I'm {agent} from the {department} team. I've read through your "
    "conversation and I'm here to help."
)
CLOSING_MESSAGE = (
    "Thanks for chatting with me today! If you need anything else, feel free to start "
    "a new conversation anytime."
)


def _coerce(enum_type, value, field: str):
    try:
        return enum_type(value)
    except ValueError as e:
        raise ValidationError(f"Invalid {field}: {value!r}") from e


class TransferOrchestrator:
    """
    Handoff state machine.

    Coordinates:
    1. Candidate matching through the AgentDirectory
    2. Transfer records and their transitions
    3. Session assignment and history through the SessionStore
    4. Live notifications through the HandoffNotifier
    5. The waiting queue for sessions no agent could take
    """

    def __init__(
        self,
        directory: AgentDirectory,
        sessions: SessionStore,
        transfers: TransferRepository,
        notifier: HandoffNotifier | None = None,
        settings: HandoffSettings | None = None,
        context_builder: TransferContextBuilder | None = None,
        queue: WaitingQueue | None = None,
    ) -> None:
        self.settings = settings or get_settings().handoff
        self.directory = directory
        self.sessions = sessions
        self.transfers = transfers
        self.notifier = notifier or HandoffNotifier()
        self.context_builder = context_builder or TransferContextBuilder(self.settings.snapshot_size)
        self.queue = queue or WaitingQueue(self.settings.queue_wait_step_seconds)

        self._session_locks = KeyedLock()

        directory.on_status_change(self._on_agent_status_change)

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    async def request_transfer(
        self,
        session_id: str,
        reason: TransferReason | str,
        priority: TransferPriority | str = TransferPriority.MEDIUM,
        *,
        exclude_agent_id: str | None = None,
        preferred_agent_id: str | None = None,
        from_agent_id: str | None = None,
        trigger: TransferTrigger | str = TransferTrigger.MANUAL,
        context: TransferContext | dict[str, Any] | None = None,
    ) -> TransferRequestResult:
        """
        Offer the session to the best available agent, or queue it.

        Queuing is a normal outcome: no transfer record is created and the
        session is retried by queue reconciliation.

        Args:
            session_id: Session to hand off
            reason: Why the handoff was requested
            priority: Handoff priority
            exclude_agent_id: Agent that must not receive the offer
            preferred_agent_id: Agent to offer first when available
            from_agent_id: Sending agent for agent-to-agent transfers
            trigger: What initiated the request
            context: Caller-supplied context merged over the generated one

        Returns:
            TransferRequestResult with status "assigned" or "queued"
        """
        reason = _coerce(TransferReason, reason, "reason")
        priority = _coerce(TransferPriority, priority, "priority")
        trigger = _coerce(TransferTrigger, trigger, "trigger")

        async with self._session_locks.hold(session_id):
            session = await self._require_session(session_id)
            if session.stage == SessionStage.COMPLETED:
                raise ValidationError(f"Session already completed: {session_id}")

            if from_agent_id and session.assigned_agent_id != from_agent_id:
                raise Unauthorized(f"Agent {from_agent_id} is not assigned to session {session_id}")
            if not from_agent_id and session.stage == SessionStage.HUMAN_AGENT:
                raise ValidationError(
                    f"Session {session_id} is handled by agent {session.assigned_agent_id}; "
                    "only that agent can transfer it"
                )

            pending = await self._pending_for_session(session_id)
            if pending:
                agent = self.directory.get_agent(pending.to_agent_id)
                return TransferRequestResult(
                    status="assigned",
                    session_id=session_id,
                    transfer_id=pending.transfer_id,
                    agent=AgentSummary.from_agent(agent),
                    estimated_wait_seconds=self.directory.estimate_wait_seconds(agent),
                )

            built = self.context_builder.build(session, reason, priority, context)
            snapshot = self.context_builder.snapshot(session)
            from_type = TransferSource.AGENT if from_agent_id else TransferSource.AI

            logger.info(
                "transfer_requested",
                session_id=session_id,
                reason=reason.value,
                priority=priority.value,
                from_type=from_type.value,
            )

            try:
                transfer, agent, wait = await self._offer(
                    session,
                    reason=reason,
                    priority=priority,
                    trigger=trigger,
                    from_type=from_type,
                    from_agent_id=from_agent_id,
                    exclude_agent_id=exclude_agent_id or from_agent_id,
                    preferred_agent_id=preferred_agent_id,
                    context=built,
                    snapshot=snapshot,
                    reroute_count=0,
                )
            except NoAgentsAvailable:
                return await self._enqueue(
                    session,
                    QueuedSession(
                        session_id=session_id,
                        reason=reason,
                        priority=priority,
                        from_type=from_type,
                        from_agent_id=from_agent_id,
                        context=built,
                    ),
                )

            self.queue.remove(session_id)

        return TransferRequestResult(
            status="assigned",
            session_id=session_id,
            transfer_id=transfer.transfer_id,
            agent=AgentSummary.from_agent(agent),
            estimated_wait_seconds=wait,
        )

    async def accept_transfer(
        self,
        transfer_id: str,
        agent_id: str,
        handoff_message: str | None = None,
    ) -> AcceptResult:
        """
        Accept a pending transfer and move the session to the agent.

        Raises:
            NotFoundError: unknown transfer, not offered to this agent, or already resolved
            CapacityExceeded: the agent lost a capacity race; the session is rerouted
            OrchestratorError: persistence failed; the transfer stays pending
        """
        transfer = await self._require_transfer(transfer_id)

        async with self._session_locks.hold(transfer.session_id):
            transfer = await self._require_pending(transfer_id, agent_id)

            session = await self._find_session(transfer.session_id)
            if session is None or session.stage == SessionStage.COMPLETED:
                await self._fail(transfer, "session_ended")
                raise NotFoundError(f"Session no longer active: {transfer.session_id}")
            ensure_session_transition(session.stage, SessionStage.HUMAN_AGENT)

            chat = ActiveChat(
                session_id=session.session_id,
                customer_name=session.customer_name,
                service_type=session.service_type,
                priority=transfer.priority,
            )
            try:
                agent = await self.directory.assign_chat(agent_id, chat, from_hold=True)
            except CapacityExceeded:
                logger.warning("transfer_capacity_race_lost", transfer_id=transfer_id, agent_id=agent_id)
                await self._fail(transfer, "capacity_exceeded")
                await self._reroute(transfer, exclude_agent_id=agent_id)
                raise

            try:
                await self._store(
                    lambda: self.sessions.set_assignment(session.session_id, agent_id, SessionStage.HUMAN_AGENT),
                    "set_assignment",
                )
            except HandoffError:
                await self._undo_accept(transfer, session, restore_session=False)
                raise

            accepted = transfer.model_copy(deep=True)
            now = utcnow()
            ensure_transfer_transition(accepted.status, TransferStatus.ACCEPTED)
            accepted.status = TransferStatus.ACCEPTED
            accepted.responded_at = now
            accepted.agent_response = AgentResponse(accepted=True, responded_at=now)
            accepted.handoff_message = handoff_message or HANDOFF_GREETING.format(
                customer=session.customer_name,
                agent=agent.name,
                department=agent.department,
            )
            try:
                await self._save_transfer(accepted)
            except HandoffError:
                await self._undo_accept(transfer, session, restore_session=True)
                raise
            transfer = accepted

            # Whoever held the session before gives up its slot
            if session.assigned_agent_id and session.assigned_agent_id != agent_id:
                await self.directory.release_chat(session.assigned_agent_id, session.session_id)

            await self._store(
                lambda: self.sessions.append_message(
                    session.session_id,
                    MessageRole.AGENT,
                    transfer.handoff_message,
                    {"agent_id": agent_id, "transfer_id": transfer_id, "is_handoff_message": True},
                ),
                "append_message",
            )
            self.queue.remove(session.session_id)

            TRANSFER_EVENTS.labels(event="accepted", reason=transfer.reason.value).inc()
            logger.info(
                "transfer_accepted",
                transfer_id=transfer_id,
                session_id=session.session_id,
                agent_id=agent_id,
                current_chat_count=agent.current_chat_count,
            )

        await self.notifier.notify_transfer_accepted(transfer, agent, transfer.handoff_message)
        return AcceptResult(transfer=transfer, agent=AgentSummary.from_agent(agent))

    async def decline_transfer(
        self,
        transfer_id: str,
        agent_id: str,
        reason: str | None = None,
    ) -> DeclineResult:
        """
        Decline a pending transfer and reroute the session.

        Exactly one of ``rerouted`` and ``escalated`` is true in the result.
        """
        transfer = await self._require_transfer(transfer_id)

        async with self._session_locks.hold(transfer.session_id):
            transfer = await self._require_pending(transfer_id, agent_id)

            now = utcnow()
            ensure_transfer_transition(transfer.status, TransferStatus.DECLINED)
            transfer.status = TransferStatus.DECLINED
            transfer.responded_at = now
            transfer.completed_at = now
            transfer.agent_response = AgentResponse(accepted=False, reason=reason, responded_at=now)
            transfer.transfer_success = False
            await self._save_transfer(transfer)
            await self.directory.release_hold(agent_id)

            TRANSFER_EVENTS.labels(event="declined", reason=transfer.reason.value).inc()
            logger.info(
                "transfer_declined",
                transfer_id=transfer_id,
                session_id=transfer.session_id,
                agent_id=agent_id,
                decline_reason=reason,
            )
            await self.notifier.notify_transfer_declined(transfer)

            return await self._reroute(transfer, exclude_agent_id=agent_id)

    async def complete_transfer(self, transfer_id: str, success: bool = True) -> Transfer:
        """Close an accepted transfer and record its timing figures."""
        transfer = await self._require_transfer(transfer_id)

        async with self._session_locks.hold(transfer.session_id):
            transfer = await self._require_transfer(transfer_id)
            ensure_transfer_transition(transfer.status, TransferStatus.COMPLETED)
            await self._complete(transfer, success)

        await self.notifier.notify_transfer_completed(transfer)
        return transfer

    async def cancel_transfer(self, transfer_id: str, reason: str = "cancelled") -> Transfer:
        """Withdraw a pending transfer; it becomes failed and is not rerouted."""
        transfer = await self._require_transfer(transfer_id)

        async with self._session_locks.hold(transfer.session_id):
            transfer = await self._require_transfer(transfer_id)
            if transfer.status != TransferStatus.PENDING:
                raise NotFoundError(f"Transfer already resolved: {transfer_id}")
            await self._fail(transfer, reason)

        return transfer

    # ------------------------------------------------------------------
    # Agent presence
    # ------------------------------------------------------------------

    async def set_agent_status(self, agent_id: str, status: AgentStatus | str) -> Agent:
        """Update agent presence; going non-online moves the agent's work elsewhere."""
        status = _coerce(AgentStatus, status, "status")
        return await self.directory.set_status(agent_id, status)

    async def handle_agent_offline(self, agent_id: str) -> dict[str, int]:
        """
        Move everything the agent holds to other agents or back to the AI.

        Pending offers to the agent are failed and rerouted. Each held session
        gets a new automatic transfer or falls back to AI handling; the
        agent's session list and counters are cleared.
        """
        stale_offers = await self._store(
            lambda: self.transfers.find(to_agent_id=agent_id, status=TransferStatus.PENDING),
            "find_transfers",
        )
        for offer in stale_offers:
            async with self._session_locks.hold(offer.session_id):
                current = await self._require_transfer(offer.transfer_id)
                if current.status != TransferStatus.PENDING:
                    continue
                await self._fail(current, "agent_unavailable")
                await self._reroute(current, exclude_agent_id=agent_id)

        released = await self.directory.clear_sessions(agent_id)
        moved = fallen_back = 0
        for chat in released:
            async with self._session_locks.hold(chat.session_id):
                if await self._move_from_offline_agent(agent_id, chat):
                    moved += 1
                else:
                    fallen_back += 1

        logger.info(
            "agent_offline_handled",
            agent_id=agent_id,
            failed_offers=len(stale_offers),
            rerouted_sessions=moved,
            fallback_sessions=fallen_back,
        )
        return {"failed_offers": len(stale_offers), "rerouted": moved, "fallback": fallen_back}

    async def _on_agent_status_change(self, agent: Agent, previous: AgentStatus) -> None:
        if agent.status != AgentStatus.ONLINE:
            await self.handle_agent_offline(agent.id)
        elif previous != AgentStatus.ONLINE:
            await self.reconcile_queue()

    async def _move_from_offline_agent(self, agent_id: str, chat: ActiveChat) -> bool:
        session = await self._find_session(chat.session_id)
        if session is None or session.stage == SessionStage.COMPLETED:
            return False

        for accepted in await self._store(
            lambda: self.transfers.find(
                session_id=chat.session_id,
                to_agent_id=agent_id,
                status=TransferStatus.ACCEPTED,
            ),
            "find_transfers",
        ):
            await self._complete(accepted, success=False)

        if session.stage != SessionStage.AI_FALLBACK:
            ensure_session_transition(session.stage, SessionStage.AI_FALLBACK)
        await self._store(
            lambda: self.sessions.set_assignment(chat.session_id, None, SessionStage.AI_FALLBACK),
            "set_assignment",
        )

        # An agent-to-agent offer already in flight takes the session over
        pending = await self._pending_for_session(chat.session_id)
        if pending:
            await self._system_message(
                chat.session_id,
                f"Agent {agent_id} went offline. The pending transfer to {pending.to_agent_id} stands.",
                {"reason": "agent_offline", "previous_agent_id": agent_id, "transfer_id": pending.transfer_id},
            )
            logger.info(
                "offline_session_has_pending_transfer",
                session_id=chat.session_id,
                agent_id=agent_id,
                transfer_id=pending.transfer_id,
            )
            return True

        context = self.context_builder.build(
            session,
            TransferReason.AGENT_UNAVAILABLE,
            chat.priority,
            {"special_instructions": f"Previous agent {agent_id} went offline"},
        )
        try:
            transfer, agent, _ = await self._offer(
                session,
                reason=TransferReason.AGENT_UNAVAILABLE,
                priority=chat.priority,
                trigger=TransferTrigger.AUTOMATIC,
                from_type=TransferSource.AGENT,
                from_agent_id=agent_id,
                exclude_agent_id=agent_id,
                preferred_agent_id=None,
                context=context,
                snapshot=self.context_builder.snapshot(session),
                reroute_count=1,
            )
        except NoAgentsAvailable:
            await self._system_message(
                chat.session_id,
                f"Agent {agent_id} went offline and no other agent is available. "
                "The AI assistant resumed the conversation with its full history.",
                {"reason": "agent_offline", "previous_agent_id": agent_id},
            )
            await self.notifier.notify_customer(chat.session_id, "agent_disconnected", FALLBACK_MESSAGE)
            TRANSFER_EVENTS.labels(event="fallback", reason=TransferReason.AGENT_UNAVAILABLE.value).inc()
            logger.info("session_fell_back_to_ai", session_id=chat.session_id, agent_id=agent_id)
            return False

        await self._system_message(
            chat.session_id,
            f"Agent {agent_id} went offline. Transferring the conversation to {agent.name}.",
            {"reason": "agent_offline", "previous_agent_id": agent_id, "transfer_id": transfer.transfer_id},
        )
        return True

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def end_session(
        self,
        session_id: str,
        agent_id: str,
        *,
        satisfaction: float | None = None,
        closing_message: str | None = None,
    ) -> ChatSession:
        """End a session held by the agent and update its performance metrics."""
        if satisfaction is not None and not 1 <= satisfaction <= 5:
            raise ValidationError("satisfaction must be between 1 and 5")

        async with self._session_locks.hold(session_id):
            session = await self._require_session(session_id)
            if session.assigned_agent_id != agent_id:
                raise Unauthorized(f"Agent {agent_id} is not assigned to session {session_id}")
            ensure_session_transition(session.stage, SessionStage.COMPLETED)

            await self._store(
                lambda: self.sessions.append_message(
                    session_id,
                    MessageRole.AGENT,
                    closing_message or CLOSING_MESSAGE,
                    {"agent_id": agent_id, "is_closing_message": True},
                ),
                "append_message",
            )
            session = await self._store(
                lambda: self.sessions.set_assignment(session_id, agent_id, SessionStage.COMPLETED),
                "set_assignment",
            )

            agent = self.directory.get_agent(agent_id)
            chat = next((c for c in agent.current_sessions if c.session_id == session_id), None)
            agent = await self.directory.release_chat(agent_id, session_id)
            if chat:
                handle_time = (utcnow() - chat.started_at).total_seconds()
                agent = await self.directory.record_performance(agent_id, handle_time, satisfaction)

            for transfer in await self._store(
                lambda: self.transfers.find(session_id=session_id),
                "find_transfers",
            ):
                if transfer.status == TransferStatus.ACCEPTED:
                    await self._complete(transfer, success=True)
                elif transfer.status == TransferStatus.PENDING:
                    await self._fail(transfer, "session_ended")
            self.queue.remove(session_id)

            logger.info(
                "session_ended",
                session_id=session_id,
                agent_id=agent_id,
                total_chats_handled=agent.total_chats_handled,
            )

        await self.notifier.notify_session_ended(session_id, agent)
        await self.reconcile_queue()
        return session

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def sweep_stale_transfers(self) -> int:
        """Fail pending transfers older than the timeout and reroute their sessions."""
        cutoff = utcnow() - timedelta(seconds=self.settings.transfer_timeout_seconds)
        pending = await self._store(
            lambda: self.transfers.find(status=TransferStatus.PENDING),
            "find_transfers",
        )

        swept = 0
        for transfer in pending:
            if transfer.requested_at > cutoff:
                continue
            async with self._session_locks.hold(transfer.session_id):
                current = await self._require_transfer(transfer.transfer_id)
                if current.status != TransferStatus.PENDING:
                    continue
                await self._fail(current, "timeout")
                await self._reroute(current, exclude_agent_id=current.to_agent_id)
                swept += 1

        if swept:
            logger.info("stale_transfers_swept", count=swept)
        return swept

    async def reconcile_queue(self) -> int:
        """Offer waiting sessions to available agents in queue order."""
        offered = 0
        for entry in self.queue.entries():
            async with self._session_locks.hold(entry.session_id):
                if self.queue.get(entry.session_id) is None:
                    continue

                session = await self._find_session(entry.session_id)
                if (
                    session is None
                    or session.stage == SessionStage.COMPLETED
                    or (
                        session.stage == SessionStage.HUMAN_AGENT
                        and session.assigned_agent_id != entry.from_agent_id
                    )
                    or await self._pending_for_session(entry.session_id)
                ):
                    self.queue.remove(entry.session_id)
                    continue

                try:
                    await self._offer(
                        session,
                        reason=entry.reason,
                        priority=entry.priority,
                        trigger=TransferTrigger.AUTOMATIC,
                        from_type=entry.from_type,
                        from_agent_id=entry.from_agent_id,
                        exclude_agent_id=entry.from_agent_id,
                        preferred_agent_id=None,
                        context=entry.context or self.context_builder.build(
                            session, entry.reason, entry.priority
                        ),
                        snapshot=self.context_builder.snapshot(session),
                        reroute_count=entry.reroute_count,
                    )
                except NoAgentsAvailable:
                    break

                self.queue.remove(entry.session_id)
                offered += 1

        if offered:
            logger.info("waiting_queue_reconciled", offered=offered, remaining=self.queue.size)
        return offered

    async def run_maintenance(self) -> dict[str, int]:
        swept = await self.sweep_stale_transfers()
        offered = await self.reconcile_queue()
        return {"stale_transfers_failed": swept, "queued_sessions_offered": offered}

    async def run_maintenance_loop(self) -> None:
        """Run the sweep and reconciliation every ``sweep_interval_seconds``."""
        while True:
            await asyncio.sleep(self.settings.sweep_interval_seconds)
            try:
                await self.run_maintenance()
            except HandoffError as e:
                logger.error("maintenance_failed", code=e.code, error=e.message)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_transfer(self, transfer_id: str) -> Transfer:
        return await self._require_transfer(transfer_id)

    async def get_pending_transfers(self, agent_id: str) -> list[Transfer]:
        """Pending offers for the agent, most urgent first."""
        self.directory.get_agent(agent_id)
        pending = await self._store(
            lambda: self.transfers.find(to_agent_id=agent_id, status=TransferStatus.PENDING),
            "find_transfers",
        )
        return sorted(pending, key=lambda t: (-t.priority.rank, t.requested_at))

    async def transfer_stats(self, agent_id: str, days: int = 7) -> dict:
        """Transfer counts and average timings for one agent over a window."""
        self.directory.get_agent(agent_id)
        since = utcnow() - timedelta(days=days)
        received = [
            t for t in await self._store(
                lambda: self.transfers.find(to_agent_id=agent_id),
                "find_transfers",
            )
            if t.requested_at >= since
        ]

        transfer_times = [t.metrics.transfer_time for t in received if t.metrics.transfer_time is not None]
        resolution_times = [
            t.metrics.resolution_time for t in received if t.metrics.resolution_time is not None
        ]
        return {
            "agent_id": agent_id,
            "period_days": days,
            "received": len(received),
            "accepted": sum(1 for t in received if t.agent_response and t.agent_response.accepted),
            "declined": sum(1 for t in received if t.status == TransferStatus.DECLINED),
            "completed": sum(1 for t in received if t.status == TransferStatus.COMPLETED),
            "avg_transfer_time": sum(transfer_times) / len(transfer_times) if transfer_times else None,
            "avg_resolution_time": sum(resolution_times) / len(resolution_times) if resolution_times else None,
        }

    async def system_stats(self) -> dict:
        pending = await self._store(
            lambda: self.transfers.find(status=TransferStatus.PENDING),
            "find_transfers",
        )
        return {
            **self.directory.stats(),
            "transfers": {"pending": len(pending)},
            "queue": self.queue.get_stats(),
        }

    def availability(self, service_type: str | None = None) -> dict:
        """Customer-facing summary of human availability."""
        candidates = self.directory.find_available_agents(service_type)
        if candidates:
            wait = self.directory.estimate_wait_seconds(candidates[0])
            message = f"A human agent is available. Estimated wait: about {max(1, round(wait / 60))} minute(s)."
        else:
            wait = (self.queue.size + 1) * self.settings.queue_wait_step_seconds
            message = "All our agents are currently busy. Our AI assistant can help you right away."

        return {
            "available": bool(candidates),
            "available_agents": len(candidates),
            "estimated_wait_seconds": wait,
            "queue_length": self.queue.size,
            "message": message,
        }

    # ------------------------------------------------------------------
    # Internals (callers hold the session lock)
    # ------------------------------------------------------------------

    async def _offer(
        self,
        session: ChatSession,
        *,
        reason: TransferReason,
        priority: TransferPriority,
        trigger: TransferTrigger,
        from_type: TransferSource,
        from_agent_id: str | None,
        exclude_agent_id: str | None,
        preferred_agent_id: str | None,
        context: TransferContext,
        snapshot: list[SnapshotMessage],
        reroute_count: int,
    ) -> tuple[Transfer, Agent, int]:
        """
        Create a pending transfer to the best candidate that still has a slot.

        A candidate whose last slot was taken concurrently is skipped in
        favour of the next-ranked one.

        Raises:
            NoAgentsAvailable: no candidate could be held
        """
        candidates = [
            candidate
            for candidate in self.directory.find_available_agents(session.service_type, exclude_agent_id)
            if not candidate.holds_session(session.session_id)
        ]
        if preferred_agent_id:
            candidates.sort(key=lambda a: a.id != preferred_agent_id)

        agent = None
        for candidate in candidates:
            if await self.directory.hold(candidate.id):
                agent = candidate
                break
            logger.info("candidate_slot_taken", agent_id=candidate.id, session_id=session.session_id)

        if agent is None:
            raise NoAgentsAvailable(f"No agent available for {session.service_type}")

        transfer = Transfer(
            session_id=session.session_id,
            from_type=from_type,
            from_agent_id=from_agent_id,
            to_agent_id=agent.id,
            reason=reason,
            trigger=trigger,
            priority=priority,
            customer_name=session.customer_name,
            service_type=session.service_type,
            context=context,
            conversation_snapshot=snapshot,
            reroute_count=reroute_count,
        )
        try:
            await self._store(lambda: self.transfers.add(transfer), "add_transfer")
        except HandoffError:
            await self.directory.release_hold(agent.id)
            raise

        wait = self.directory.estimate_wait_seconds(agent)
        TRANSFER_EVENTS.labels(event="created", reason=reason.value).inc()
        logger.info(
            "transfer_created",
            transfer_id=transfer.transfer_id,
            session_id=session.session_id,
            agent_id=agent.id,
            trigger=trigger.value,
            reroute_count=reroute_count,
            estimated_wait_seconds=wait,
        )

        await self.notifier.notify_transfer_request(transfer, agent, wait)
        return transfer, agent, wait

    async def _reroute(self, previous: Transfer, *, exclude_agent_id: str) -> DeclineResult:
        """Offer the session of a resolved transfer to the next candidate, or escalate."""
        session = await self._find_session(previous.session_id)
        if session is None or session.stage == SessionStage.COMPLETED:
            return DeclineResult(transfer_id=previous.transfer_id, rerouted=False, escalated=True)

        reroute_count = previous.reroute_count + 1
        if reroute_count > self.settings.max_reroutes:
            logger.warning(
                "reroute_limit_reached",
                session_id=session.session_id,
                reroute_count=reroute_count,
            )
            await self._escalate(session, previous, "reroute limit reached", enqueue=False)
            return DeclineResult(transfer_id=previous.transfer_id, rerouted=False, escalated=True)

        context = previous.context.model_copy(
            update={"previous_attempts": previous.context.previous_attempts + 1}
        )
        try:
            transfer, agent, _ = await self._offer(
                session,
                reason=previous.reason,
                priority=previous.priority,
                trigger=TransferTrigger.AUTOMATIC,
                from_type=previous.from_type,
                from_agent_id=previous.from_agent_id,
                exclude_agent_id=exclude_agent_id,
                preferred_agent_id=None,
                context=context,
                snapshot=[m.model_copy() for m in previous.conversation_snapshot],
                reroute_count=reroute_count,
            )
        except NoAgentsAvailable:
            await self._escalate(session, previous, "no alternative agent available", enqueue=True)
            return DeclineResult(transfer_id=previous.transfer_id, rerouted=False, escalated=True)

        TRANSFER_EVENTS.labels(event="rerouted", reason=previous.reason.value).inc()
        return DeclineResult(
            transfer_id=previous.transfer_id,
            rerouted=True,
            escalated=False,
            new_transfer_id=transfer.transfer_id,
            new_agent_id=agent.id,
        )

    async def _escalate(
        self,
        session: ChatSession,
        previous: Transfer,
        cause: str,
        *,
        enqueue: bool,
    ) -> None:
        """Flag the session with a priority and hand it back to the AI."""
        priority = max(previous.priority, TransferPriority.HIGH, key=lambda p: p.rank)

        # A sending agent that still holds the session keeps it
        keeps_agent = bool(
            session.assigned_agent_id
            and session.stage == SessionStage.HUMAN_AGENT
            and self._agent_holds(session.assigned_agent_id, session.session_id)
        )
        if not keeps_agent and session.stage != SessionStage.AI_FALLBACK:
            ensure_session_transition(session.stage, SessionStage.AI_FALLBACK)
        if not keeps_agent:
            await self._store(
                lambda: self.sessions.set_assignment(session.session_id, None, SessionStage.AI_FALLBACK),
                "set_assignment",
            )
        await self._store(
            lambda: self.sessions.mark_escalated(session.session_id, priority),
            "mark_escalated",
        )
        await self._system_message(
            session.session_id,
            f"Transfer escalated with {priority.value} priority: {cause}.",
            {"escalated": True, "priority": priority.value, "transfer_id": previous.transfer_id},
        )

        if enqueue:
            self.queue.add(QueuedSession(
                session_id=session.session_id,
                reason=previous.reason,
                priority=priority,
                from_type=previous.from_type,
                from_agent_id=previous.from_agent_id,
                context=previous.context,
                reroute_count=previous.reroute_count,
            ))

        TRANSFER_EVENTS.labels(event="escalated", reason=previous.reason.value).inc()
        logger.warning(
            "transfer_escalated",
            session_id=session.session_id,
            priority=priority.value,
            cause=cause,
            kept_by_agent=keeps_agent,
        )
        await self.notifier.notify_customer(
            session.session_id,
            "transfer_escalated",
            ESCALATION_MESSAGE,
            priority=priority.value,
        )

    async def _enqueue(self, session: ChatSession, entry: QueuedSession) -> TransferRequestResult:
        position = self.queue.add(entry)
        queued = self.queue.get(session.session_id)

        TRANSFER_EVENTS.labels(event="queued", reason=entry.reason.value).inc()
        logger.info(
            "transfer_queued",
            session_id=session.session_id,
            queue_position=position,
            priority=queued.priority.value,
        )
        await self.notifier.notify_customer(
            session.session_id,
            "transfer_queued",
            QUEUED_MESSAGE.format(position=position),
            queuePosition=position,
            estimatedWaitSeconds=queued.estimated_wait_seconds,
        )
        return TransferRequestResult(
            status="queued",
            session_id=session.session_id,
            estimated_wait_seconds=queued.estimated_wait_seconds,
            queue_position=position,
        )

    async def _fail(self, transfer: Transfer, reason: str) -> None:
        ensure_transfer_transition(transfer.status, TransferStatus.FAILED)
        transfer.status = TransferStatus.FAILED
        transfer.failure_reason = reason
        transfer.completed_at = utcnow()
        transfer.transfer_success = False
        await self._save_transfer(transfer)
        await self.directory.release_hold(transfer.to_agent_id)

        TRANSFER_EVENTS.labels(event="failed", reason=transfer.reason.value).inc()
        logger.info(
            "transfer_failed",
            transfer_id=transfer.transfer_id,
            session_id=transfer.session_id,
            agent_id=transfer.to_agent_id,
            failure_reason=reason,
        )
        await self.notifier.notify_transfer_failed(transfer)

    async def _complete(self, transfer: Transfer, success: bool) -> None:
        ensure_transfer_transition(transfer.status, TransferStatus.COMPLETED)
        transfer.status = TransferStatus.COMPLETED
        transfer.completed_at = utcnow()
        transfer.transfer_success = success
        if transfer.responded_at:
            transfer.metrics.transfer_time = (transfer.responded_at - transfer.requested_at).total_seconds()
            transfer.metrics.resolution_time = (transfer.completed_at - transfer.responded_at).total_seconds()
        await self._save_transfer(transfer)

        TRANSFER_EVENTS.labels(event="completed", reason=transfer.reason.value).inc()
        logger.info(
            "transfer_completed",
            transfer_id=transfer.transfer_id,
            success=success,
            transfer_time=transfer.metrics.transfer_time,
            resolution_time=transfer.metrics.resolution_time,
        )

    async def _undo_accept(self, transfer: Transfer, session: ChatSession, *, restore_session: bool) -> None:
        """Return the accepted chat to an offer hold, leaving the transfer pending."""
        logger.error(
            "transfer_accept_rolled_back",
            transfer_id=transfer.transfer_id,
            session_id=session.session_id,
            agent_id=transfer.to_agent_id,
        )
        if restore_session:
            await self._store(
                lambda: self.sessions.set_assignment(session.session_id, session.assigned_agent_id, session.stage),
                "set_assignment",
            )
        await self.directory.release_chat(transfer.to_agent_id, session.session_id, to_hold=True)

    async def _system_message(self, session_id: str, text: str, metadata: dict[str, Any]) -> None:
        await self._store(
            lambda: self.sessions.append_message(session_id, MessageRole.SYSTEM, text, metadata),
            "append_message",
        )

    def _agent_holds(self, agent_id: str, session_id: str) -> bool:
        try:
            return self.directory.get_agent(agent_id).holds_session(session_id)
        except NotFoundError:
            return False

    async def _pending_for_session(self, session_id: str) -> Transfer | None:
        pending = await self._store(
            lambda: self.transfers.find(session_id=session_id, status=TransferStatus.PENDING),
            "find_transfers",
        )
        return pending[0] if pending else None

    async def _require_pending(self, transfer_id: str, agent_id: str) -> Transfer:
        transfer = await self._require_transfer(transfer_id)
        if transfer.to_agent_id != agent_id:
            raise NotFoundError(f"Transfer {transfer_id} was not offered to agent {agent_id}")
        if transfer.status != TransferStatus.PENDING:
            raise NotFoundError(f"Transfer already resolved: {transfer_id}")
        return transfer

    async def _require_transfer(self, transfer_id: str) -> Transfer:
        transfer = await self._store(lambda: self.transfers.get(transfer_id), "get_transfer")
        if transfer is None:
            raise NotFoundError(f"Transfer not found: {transfer_id}")
        return transfer

    async def _find_session(self, session_id: str) -> ChatSession | None:
        return await self._store(lambda: self.sessions.find_session(session_id), "find_session")

    async def _require_session(self, session_id: str) -> ChatSession:
        session = await self._find_session(session_id)
        if session is None:
            raise NotFoundError(f"Session not found: {session_id}")
        return session

    async def _save_transfer(self, transfer: Transfer) -> None:
        await self._store(lambda: self.transfers.update(transfer), "update_transfer")

    async def _store(self, operation, description: str):
        return await call_with_retry(
            operation,
            description=description,
            delay_seconds=self.settings.persistence_retry_delay_seconds,
        )
