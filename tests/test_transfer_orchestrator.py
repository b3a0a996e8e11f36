"""
Transfer Orchestrator tests.

Tests the handoff state machine end to end over in-memory stores:
- Matching, queuing and the pending-transfer invariant
- Accept / decline / reroute / escalate
- Agent offline handling and fallback to the AI
- Cancel, stale sweep and queue reconciliation
- Ending sessions and agent-to-agent transfers
"""

import asyncio
from datetime import timedelta

import pytest

from handoff_hub.core.errors import (
    CapacityExceeded,
    InvalidTransitionError,
    NotFoundError,
    OrchestratorError,
    StoreError,
    Unauthorized,
    ValidationError,
)
from handoff_hub.models import (
    AcceptResult,
    AgentStatus,
    MessageRole,
    SessionStage,
    Transfer,
    TransferPriority,
    TransferReason,
    TransferSource,
    TransferStatus,
    TransferTrigger,
)
from handoff_hub.utils import utcnow
from tests.conftest import make_agent


async def pending_for(hub, session_id):
    return await hub.transfers.find(session_id=session_id, status=TransferStatus.PENDING)


# ─────────────────────────────────────────────────────────────────────────────
# Requesting
# ─────────────────────────────────────────────────────────────────────────────

class TestRequestTransfer:

    @pytest.mark.asyncio
    async def test_second_request_goes_to_other_agent(self, hub):
        """Test: two single-slot agents get one session each, never double-booked."""
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        s1 = await hub.open_session()
        s2 = await hub.open_session(customer="Ben")
        
        r1 = await hub.orchestrator.request_transfer(s1.session_id, "customer_request")
        r2 = await hub.orchestrator.request_transfer(s2.session_id, "customer_request")
        
        assert (r1.status, r1.agent.id) == ("assigned", "agent-a")
        assert (r2.status, r2.agent.id) == ("assigned", "agent-b")
        
        await hub.orchestrator.accept_transfer(r1.transfer_id, "agent-a")
        await hub.orchestrator.accept_transfer(r2.transfer_id, "agent-b")
        assert hub.directory.get_agent("agent-a").current_chat_count == 1
        assert hub.directory.get_agent("agent-b").current_chat_count == 1

    @pytest.mark.asyncio
    async def test_offer_notifies_agent_and_customer(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        
        result = await hub.orchestrator.request_transfer(session.session_id, "ai_escalation", "high")
        
        offer = hub.channel.agent_frames["agent-a"][-1]
        assert offer["type"] == "transfer_request"
        assert offer["transferId"] == result.transfer_id
        assert offer["sessionId"] == session.session_id
        assert offer["customerName"] == "Ana"
        assert offer["priority"] == "high"
        assert offer["estimatedWaitSeconds"] == result.estimated_wait_seconds == 60
        assert "transfer_initiated" in hub.channel.customer_types(session.session_id)

    @pytest.mark.asyncio
    async def test_transfer_carries_context_and_snapshot(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session(messages=tuple(f"message {i}" for i in range(14)))
        
        result = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        transfer = await hub.orchestrator.get_transfer(result.transfer_id)
        
        assert len(transfer.conversation_snapshot) == 10
        assert transfer.conversation_snapshot[-1].message == "message 13"
        assert transfer.context.customer_issue == "message 12"
        assert transfer.context.ai_confidence == 0.2
        assert transfer.from_type == TransferSource.AI
        assert transfer.trigger == TransferTrigger.MANUAL

    @pytest.mark.asyncio
    async def test_no_agents_is_queued_not_failed(self, hub):
        session = await hub.open_session()
        
        result = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        assert result.status == "queued"
        assert result.transfer_id is None
        assert result.queue_position == 1
        assert result.estimated_wait_seconds == 30
        assert await hub.transfers.find(session_id=session.session_id) == []
        assert hub.channel.customer_types(session.session_id) == ["transfer_queued"]

    @pytest.mark.asyncio
    async def test_repeat_request_returns_existing_pending_transfer(self, hub):
        await hub.add_agents(make_agent("agent-a", max_chats=3))
        session = await hub.open_session()
        
        first = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        second = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        assert second.transfer_id == first.transfer_id
        assert len(await pending_for(hub, session.session_id)) == 1
        assert hub.directory.held_offers("agent-a") == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_for_one_session_create_one_transfer(self, hub):
        await hub.add_agents(make_agent("agent-a", max_chats=3), make_agent("agent-b", max_chats=3))
        session = await hub.open_session()
        
        results = await asyncio.gather(*(
            hub.orchestrator.request_transfer(session.session_id, "customer_request")
            for _ in range(4)
        ))
        
        assert len({r.transfer_id for r in results}) == 1
        assert len(await pending_for(hub, session.session_id)) == 1

    @pytest.mark.asyncio
    async def test_preferred_agent_is_offered_first(self, hub):
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        
        result = await hub.orchestrator.request_transfer(
            session.session_id, "customer_request", preferred_agent_id="agent-b"
        )
        
        assert result.agent.id == "agent-b"

    @pytest.mark.asyncio
    async def test_invalid_input(self, hub):
        session = await hub.open_session()
        
        with pytest.raises(ValidationError):
            await hub.orchestrator.request_transfer(session.session_id, "bored")
        with pytest.raises(ValidationError):
            await hub.orchestrator.request_transfer(session.session_id, "customer_request", "asap")
        with pytest.raises(NotFoundError):
            await hub.orchestrator.request_transfer("missing", "customer_request")

    @pytest.mark.asyncio
    async def test_assistant_cannot_take_session_from_agent(self, hub):
        """Test: only the assigned agent can move a session it is handling."""
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        first = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(first.transfer_id, "agent-a")

        with pytest.raises(ValidationError):
            await hub.orchestrator.request_transfer(session.session_id, "customer_request")

        assert await pending_for(hub, session.session_id) == []
        assert hub.directory.held_offers("agent-b") == 0
        assert hub.directory.get_agent("agent-a").holds_session(session.session_id)

    @pytest.mark.asyncio
    async def test_pending_transfers_most_urgent_first(self, hub):
        await hub.add_agents(make_agent("agent-a", max_chats=3))
        for priority in ("low", "urgent", "medium"):
            session = await hub.open_session()
            await hub.orchestrator.request_transfer(session.session_id, "customer_request", priority)
        
        pending = await hub.orchestrator.get_pending_transfers("agent-a")
        
        assert [t.priority for t in pending] == [
            TransferPriority.URGENT,
            TransferPriority.MEDIUM,
            TransferPriority.LOW,
        ]


# ─────────────────────────────────────────────────────────────────────────────
# Accepting
# ─────────────────────────────────────────────────────────────────────────────

class TestAcceptTransfer:

    @pytest.mark.asyncio
    async def test_accept_assigns_session(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        result = await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        assert result.transfer.status == TransferStatus.ACCEPTED
        assert result.transfer.responded_at is not None
        assert result.transfer.handoff_message.startswith("Hi Ana!")
        
        agent = hub.directory.get_agent("agent-a")
        assert agent.current_chat_count == 1
        assert agent.holds_session(session.session_id)
        assert hub.directory.held_offers("agent-a") == 0
        
        stored = await hub.sessions.find_session(session.session_id)
        assert stored.stage == SessionStage.HUMAN_AGENT
        assert stored.assigned_agent_id == "agent-a"
        assert stored.conversation_history[-1].role == MessageRole.AGENT
        assert stored.conversation_history[-1].metadata["is_handoff_message"] is True
        assert "transfer_accepted" in hub.channel.customer_types(session.session_id)

    @pytest.mark.asyncio
    async def test_accepting_twice_is_not_found(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        with pytest.raises(NotFoundError):
            await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        assert hub.directory.get_agent("agent-a").current_chat_count == 1

    @pytest.mark.asyncio
    async def test_only_target_agent_can_accept(self, hub):
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        with pytest.raises(NotFoundError):
            await hub.orchestrator.accept_transfer(request.transfer_id, "agent-b")

    @pytest.mark.asyncio
    async def test_concurrent_accepts_respect_capacity(self, hub):
        """Test: two offers to one agent whose capacity shrank; only one accept wins."""
        await hub.add_agents(make_agent("agent-a", max_chats=2))
        s1 = await hub.open_session()
        s2 = await hub.open_session(customer="Ben")
        r1 = await hub.orchestrator.request_transfer(s1.session_id, "customer_request")
        r2 = await hub.orchestrator.request_transfer(s2.session_id, "customer_request")
        await hub.directory.update_capacity("agent-a", 1)
        
        results = await asyncio.gather(
            hub.orchestrator.accept_transfer(r1.transfer_id, "agent-a"),
            hub.orchestrator.accept_transfer(r2.transfer_id, "agent-a"),
            return_exceptions=True,
        )
        
        assert sum(1 for r in results if isinstance(r, AcceptResult)) == 1
        assert sum(1 for r in results if isinstance(r, CapacityExceeded)) == 1
        agent = hub.directory.get_agent("agent-a")
        assert agent.current_chat_count == 1
        assert hub.directory.held_offers("agent-a") == 0
        
        failed = await hub.transfers.find(status=TransferStatus.FAILED)
        assert [t.failure_reason for t in failed] == ["capacity_exceeded"]

    @pytest.mark.asyncio
    async def test_capacity_never_exceeded_under_load(self, hub):
        await hub.add_agents(*(make_agent(f"agent-{i}", max_chats=2) for i in range(3)))
        sessions = [await hub.open_session(customer=f"C{i}") for i in range(10)]
        
        requests = await asyncio.gather(*(
            hub.orchestrator.request_transfer(s.session_id, "customer_request") for s in sessions
        ))
        assigned = [r for r in requests if r.status == "assigned"]
        await asyncio.gather(
            *(hub.orchestrator.accept_transfer(r.transfer_id, r.agent.id) for r in assigned),
            return_exceptions=True,
        )
        
        assert len(assigned) == 6
        assert hub.orchestrator.queue.size == 4
        for agent in hub.directory.list_agents():
            assert agent.current_chat_count <= agent.max_concurrent_chats

    @pytest.mark.asyncio
    async def test_accept_after_session_ended_fails_transfer(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.sessions.set_assignment(session.session_id, None, SessionStage.COMPLETED)
        
        with pytest.raises(NotFoundError):
            await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        transfer = await hub.orchestrator.get_transfer(request.transfer_id)
        assert transfer.status == TransferStatus.FAILED
        assert hub.directory.get_agent("agent-a").current_chat_count == 0

    @pytest.mark.asyncio
    async def test_transient_store_failure_is_retried(self, hub):
        calls = {"count": 0}
        original = hub.sessions.set_assignment
        
        async def flaky_set_assignment(*args, **kwargs):
            calls["count"] += 1
            if calls["count"] == 1:
                raise StoreError("connection reset")
            return await original(*args, **kwargs)
        
        hub.sessions.set_assignment = flaky_set_assignment
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        assert calls["count"] == 2
        stored = await hub.sessions.find_session(session.session_id)
        assert stored.assigned_agent_id == "agent-a"

    @pytest.mark.asyncio
    async def test_session_store_outage_leaves_offer_pending(self, hub):
        outage = {"on": True}
        original = hub.sessions.set_assignment

        async def failing_set_assignment(*args, **kwargs):
            if outage["on"]:
                raise StoreError("database unavailable")
            return await original(*args, **kwargs)

        hub.sessions.set_assignment = failing_set_assignment
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")

        with pytest.raises(OrchestratorError):
            await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")

        transfer = await hub.orchestrator.get_transfer(request.transfer_id)
        assert transfer.status == TransferStatus.PENDING
        agent = hub.directory.get_agent("agent-a")
        assert agent.current_chat_count == 0
        assert agent.current_sessions == []
        assert hub.directory.held_offers("agent-a") == 1
        stored = await hub.sessions.find_session(session.session_id)
        assert (stored.stage, stored.assigned_agent_id) == (SessionStage.AI_HANDLING, None)

        outage["on"] = False
        result = await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")

        assert result.transfer.status == TransferStatus.ACCEPTED
        assert hub.directory.held_offers("agent-a") == 0

    @pytest.mark.asyncio
    async def test_transfer_write_failure_restores_session(self, hub):
        original = hub.transfers.update

        async def failing_update(transfer):
            if transfer.status == TransferStatus.ACCEPTED:
                raise StoreError("write conflict")
            return await original(transfer)

        hub.transfers.update = failing_update
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")

        with pytest.raises(OrchestratorError):
            await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")

        stored = await hub.sessions.find_session(session.session_id)
        assert (stored.stage, stored.assigned_agent_id) == (SessionStage.AI_HANDLING, None)
        transfer = await hub.orchestrator.get_transfer(request.transfer_id)
        assert transfer.status == TransferStatus.PENDING
        assert hub.directory.get_agent("agent-a").current_chat_count == 0
        assert hub.directory.held_offers("agent-a") == 1

    @pytest.mark.asyncio
    async def test_accept_releases_previous_holder(self, hub):
        """Test: an offer left in the store for a held session frees the old slot on accept."""
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        first = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(first.transfer_id, "agent-a")

        assert await hub.directory.hold("agent-b") is True
        leftover = Transfer(
            session_id=session.session_id,
            to_agent_id="agent-b",
            reason=TransferReason.CUSTOMER_REQUEST,
            customer_name=session.customer_name,
            service_type=session.service_type,
        )
        await hub.transfers.add(leftover)

        await hub.orchestrator.accept_transfer(leftover.transfer_id, "agent-b")
        await hub.orchestrator.end_session(session.session_id, "agent-b")

        previous = hub.directory.get_agent("agent-a")
        assert previous.current_chat_count == 0
        assert previous.current_sessions == []
        assert hub.directory.get_agent("agent-b").current_chat_count == 0


# ─────────────────────────────────────────────────────────────────────────────
# Declining
# ─────────────────────────────────────────────────────────────────────────────

class TestDeclineTransfer:

    @pytest.mark.asyncio
    async def test_decline_reroutes_to_next_agent(self, hub):
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        result = await hub.orchestrator.decline_transfer(request.transfer_id, "agent-a", "busy")
        
        assert result.rerouted is True
        assert result.escalated is False
        assert result.new_agent_id == "agent-b"
        
        old = await hub.orchestrator.get_transfer(request.transfer_id)
        new = await hub.orchestrator.get_transfer(result.new_transfer_id)
        assert old.status == TransferStatus.DECLINED
        assert old.agent_response.reason == "busy"
        assert new.transfer_id != old.transfer_id
        assert new.status == TransferStatus.PENDING
        assert new.session_id == old.session_id
        assert new.to_agent_id == "agent-b"
        assert new.trigger == TransferTrigger.AUTOMATIC
        assert new.reroute_count == 1
        assert new.conversation_snapshot == old.conversation_snapshot
        
        assert [t.transfer_id for t in await pending_for(hub, session.session_id)] == [new.transfer_id]
        assert hub.directory.held_offers("agent-a") == 0
        assert hub.directory.held_offers("agent-b") == 1

    @pytest.mark.asyncio
    async def test_decline_without_alternative_escalates(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        result = await hub.orchestrator.decline_transfer(request.transfer_id, "agent-a")
        
        assert result.rerouted is False
        assert result.escalated is True
        assert await pending_for(hub, session.session_id) == []
        
        stored = await hub.sessions.find_session(session.session_id)
        assert stored.stage == SessionStage.AI_FALLBACK
        assert stored.escalated is True
        assert stored.escalation_priority == TransferPriority.HIGH
        assert stored.conversation_history[-1].role == MessageRole.SYSTEM
        assert hub.orchestrator.queue.get(session.session_id) is not None
        assert "transfer_escalated" in hub.channel.customer_types(session.session_id)

    @pytest.mark.asyncio
    async def test_escalation_keeps_urgent_priority(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "emergency", "urgent")
        
        await hub.orchestrator.decline_transfer(request.transfer_id, "agent-a")
        
        stored = await hub.sessions.find_session(session.session_id)
        assert stored.escalation_priority == TransferPriority.URGENT

    @pytest.mark.asyncio
    async def test_reroute_limit_escalates(self, hub):
        hub.orchestrator.settings.max_reroutes = 1
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"), make_agent("agent-c"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        first = await hub.orchestrator.decline_transfer(request.transfer_id, "agent-a")
        second = await hub.orchestrator.decline_transfer(first.new_transfer_id, "agent-b")
        
        assert first.rerouted is True
        assert second.escalated is True
        assert await pending_for(hub, session.session_id) == []
        assert hub.directory.held_offers("agent-c") == 0
        assert hub.orchestrator.queue.get(session.session_id) is None

    @pytest.mark.asyncio
    async def test_declining_resolved_transfer_is_not_found(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.decline_transfer(request.transfer_id, "agent-a")
        
        with pytest.raises(NotFoundError):
            await hub.orchestrator.decline_transfer(request.transfer_id, "agent-a")


# ─────────────────────────────────────────────────────────────────────────────
# Agent offline
# ─────────────────────────────────────────────────────────────────────────────

class TestAgentOffline:

    @pytest.mark.asyncio
    async def test_offline_without_alternative_falls_back_to_ai(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        await hub.orchestrator.set_agent_status("agent-a", "offline")
        
        stored = await hub.sessions.find_session(session.session_id)
        assert stored.stage == SessionStage.AI_FALLBACK
        assert stored.assigned_agent_id is None
        assert stored.conversation_history[-1].role == MessageRole.SYSTEM
        
        agent = hub.directory.get_agent("agent-a")
        assert agent.current_chat_count == 0
        assert agent.current_sessions == []
        
        closed = await hub.orchestrator.get_transfer(request.transfer_id)
        assert closed.status == TransferStatus.COMPLETED
        assert closed.transfer_success is False
        assert "agent_disconnected" in hub.channel.customer_types(session.session_id)

    @pytest.mark.asyncio
    async def test_offline_moves_held_session_to_other_agent(self, hub):
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        await hub.orchestrator.set_agent_status("agent-a", AgentStatus.BREAK)
        
        [moved] = await pending_for(hub, session.session_id)
        assert moved.to_agent_id == "agent-b"
        assert moved.reason == TransferReason.AGENT_UNAVAILABLE
        assert moved.trigger == TransferTrigger.AUTOMATIC
        assert (moved.from_type, moved.from_agent_id) == (TransferSource.AGENT, "agent-a")
        
        await hub.orchestrator.accept_transfer(moved.transfer_id, "agent-b")
        stored = await hub.sessions.find_session(session.session_id)
        assert (stored.stage, stored.assigned_agent_id) == (SessionStage.HUMAN_AGENT, "agent-b")

    @pytest.mark.asyncio
    async def test_offline_fails_and_reroutes_pending_offers(self, hub):
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        await hub.orchestrator.set_agent_status("agent-a", "offline")
        
        old = await hub.orchestrator.get_transfer(request.transfer_id)
        assert old.status == TransferStatus.FAILED
        assert old.failure_reason == "agent_unavailable"
        [new] = await pending_for(hub, session.session_id)
        assert new.to_agent_id == "agent-b"
        assert hub.directory.held_offers("agent-a") == 0

    @pytest.mark.asyncio
    async def test_offline_sender_keeps_single_pending_agent_transfer(self, hub):
        await hub.add_agents(*(make_agent(f"agent-{x}", max_chats=2) for x in "abc"))
        session = await hub.open_session()
        first = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(first.transfer_id, "agent-a")
        handover = await hub.orchestrator.request_transfer(
            session.session_id,
            "skill_mismatch",
            from_agent_id="agent-a",
        )

        await hub.orchestrator.set_agent_status("agent-a", AgentStatus.OFFLINE)

        [pending] = await pending_for(hub, session.session_id)
        assert pending.transfer_id == handover.transfer_id
        assert pending.to_agent_id == "agent-b"
        assert hub.directory.held_offers("agent-c") == 0
        stored = await hub.sessions.find_session(session.session_id)
        assert (stored.stage, stored.assigned_agent_id) == (SessionStage.AI_FALLBACK, None)

        await hub.orchestrator.accept_transfer(handover.transfer_id, "agent-b")

        stored = await hub.sessions.find_session(session.session_id)
        assert (stored.stage, stored.assigned_agent_id) == (SessionStage.HUMAN_AGENT, "agent-b")
        assert hub.directory.get_agent("agent-a").current_chat_count == 0
        assert hub.directory.get_agent("agent-b").current_chat_count == 1


# ─────────────────────────────────────────────────────────────────────────────
# Complete, cancel, sweep and reconciliation
# ─────────────────────────────────────────────────────────────────────────────

class TestLifecycle:

    @pytest.mark.asyncio
    async def test_complete_records_timings(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        transfer = await hub.orchestrator.complete_transfer(request.transfer_id, success=True)
        
        assert transfer.status == TransferStatus.COMPLETED
        assert transfer.transfer_success is True
        assert transfer.metrics.transfer_time >= 0
        assert transfer.metrics.resolution_time >= 0
        
        with pytest.raises(InvalidTransitionError):
            await hub.orchestrator.complete_transfer(request.transfer_id)

    @pytest.mark.asyncio
    async def test_pending_transfer_cannot_complete(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        with pytest.raises(InvalidTransitionError):
            await hub.orchestrator.complete_transfer(request.transfer_id)

    @pytest.mark.asyncio
    async def test_cancel_fails_pending_transfer(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        transfer = await hub.orchestrator.cancel_transfer(request.transfer_id, "customer_left")
        
        assert transfer.status == TransferStatus.FAILED
        assert transfer.failure_reason == "customer_left"
        assert hub.directory.held_offers("agent-a") == 0
        assert hub.channel.agent_frames["agent-a"][-1]["type"] == "transfer_cancelled"
        
        with pytest.raises(NotFoundError):
            await hub.orchestrator.cancel_transfer(request.transfer_id)

    @pytest.mark.asyncio
    async def test_sweep_fails_stale_transfers_and_reroutes(self, hub):
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        assert await hub.orchestrator.sweep_stale_transfers() == 0
        
        stored = await hub.transfers.get(request.transfer_id)
        stored.requested_at = utcnow() - timedelta(minutes=10)
        await hub.transfers.update(stored)
        
        assert await hub.orchestrator.sweep_stale_transfers() == 1
        old = await hub.orchestrator.get_transfer(request.transfer_id)
        assert (old.status, old.failure_reason) == (TransferStatus.FAILED, "timeout")
        [new] = await pending_for(hub, session.session_id)
        assert new.to_agent_id == "agent-b"

    @pytest.mark.asyncio
    async def test_agent_coming_online_drains_queue_by_priority(self, hub):
        await hub.add_agents(make_agent("agent-a", status=AgentStatus.OFFLINE))
        low = await hub.open_session(customer="Low")
        urgent = await hub.open_session(customer="Urgent")
        await hub.orchestrator.request_transfer(low.session_id, "customer_request", "low")
        queued = await hub.orchestrator.request_transfer(urgent.session_id, "emergency", "urgent")
        assert queued.queue_position == 1
        
        await hub.orchestrator.set_agent_status("agent-a", "online")
        
        [offer] = await pending_for(hub, urgent.session_id)
        assert offer.to_agent_id == "agent-a"
        assert await pending_for(hub, low.session_id) == []
        assert hub.orchestrator.queue.get(low.session_id).queue_position == 1

    @pytest.mark.asyncio
    async def test_maintenance_reports_work_done(self, hub):
        session = await hub.open_session()
        await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.add_agents(make_agent("agent-a"))
        
        report = await hub.orchestrator.run_maintenance()
        
        assert report == {"stale_transfers_failed": 0, "queued_sessions_offered": 1}
        assert hub.orchestrator.queue.size == 0


# ─────────────────────────────────────────────────────────────────────────────
# Sessions and agent-to-agent transfers
# ─────────────────────────────────────────────────────────────────────────────

class TestSessions:

    @pytest.mark.asyncio
    async def test_end_session_updates_metrics(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        ended = await hub.orchestrator.end_session(session.session_id, "agent-a", satisfaction=5)
        
        assert ended.stage == SessionStage.COMPLETED
        assert ended.conversation_history[-1].metadata["is_closing_message"] is True
        agent = hub.directory.get_agent("agent-a")
        assert agent.current_chat_count == 0
        assert agent.total_chats_handled == 1
        assert agent.average_satisfaction == 5
        transfer = await hub.orchestrator.get_transfer(request.transfer_id)
        assert transfer.status == TransferStatus.COMPLETED
        assert "session_ended" in hub.channel.customer_types(session.session_id)

    @pytest.mark.asyncio
    async def test_only_assigned_agent_ends_session(self, hub):
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        with pytest.raises(Unauthorized):
            await hub.orchestrator.end_session(session.session_id, "agent-b")

    @pytest.mark.asyncio
    async def test_ending_session_frees_slot_for_queue(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        s1 = await hub.open_session()
        s2 = await hub.open_session(customer="Ben")
        request = await hub.orchestrator.request_transfer(s1.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        queued = await hub.orchestrator.request_transfer(s2.session_id, "customer_request")
        assert queued.status == "queued"
        
        await hub.orchestrator.end_session(s1.session_id, "agent-a")
        
        [offer] = await pending_for(hub, s2.session_id)
        assert offer.to_agent_id == "agent-a"

    @pytest.mark.asyncio
    async def test_session_locks_do_not_accumulate(self, hub):
        await hub.add_agents(make_agent("agent-a", max_chats=3))
        sessions = [await hub.open_session(customer=f"C{i}") for i in range(3)]
        requests = await asyncio.gather(*(
            hub.orchestrator.request_transfer(s.session_id, "customer_request") for s in sessions
        ))
        for request in requests:
            await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        for session in sessions:
            await hub.orchestrator.end_session(session.session_id, "agent-a")

        assert len(hub.orchestrator._session_locks) == 0

    @pytest.mark.asyncio
    async def test_agent_to_agent_transfer(self, hub):
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        
        handoff = await hub.orchestrator.request_transfer(
            session.session_id, "skill_mismatch", from_agent_id="agent-a"
        )
        assert handoff.agent.id == "agent-b"
        await hub.orchestrator.accept_transfer(handoff.transfer_id, "agent-b")
        
        assert hub.directory.get_agent("agent-a").current_chat_count == 0
        assert hub.directory.get_agent("agent-b").current_chat_count == 1
        stored = await hub.sessions.find_session(session.session_id)
        assert stored.assigned_agent_id == "agent-b"
        transfer = await hub.orchestrator.get_transfer(handoff.transfer_id)
        assert transfer.from_type == TransferSource.AGENT

    @pytest.mark.asyncio
    async def test_declined_agent_transfer_stays_with_sender(self, hub):
        await hub.add_agents(make_agent("agent-a"), make_agent("agent-b"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        handoff = await hub.orchestrator.request_transfer(
            session.session_id, "skill_mismatch", from_agent_id="agent-a"
        )
        
        result = await hub.orchestrator.decline_transfer(handoff.transfer_id, "agent-b")
        
        assert result.escalated is True
        stored = await hub.sessions.find_session(session.session_id)
        assert (stored.stage, stored.assigned_agent_id) == (SessionStage.HUMAN_AGENT, "agent-a")
        assert stored.escalated is True
        assert hub.directory.get_agent("agent-a").current_chat_count == 1

    @pytest.mark.asyncio
    async def test_agent_transfer_requires_holding_the_session(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        
        with pytest.raises(Unauthorized):
            await hub.orchestrator.request_transfer(
                session.session_id, "skill_mismatch", from_agent_id="agent-a"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Stats
# ─────────────────────────────────────────────────────────────────────────────

class TestStats:

    @pytest.mark.asyncio
    async def test_transfer_stats_for_agent(self, hub):
        await hub.add_agents(make_agent("agent-a"))
        session = await hub.open_session()
        request = await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        await hub.orchestrator.accept_transfer(request.transfer_id, "agent-a")
        await hub.orchestrator.complete_transfer(request.transfer_id)
        
        stats = await hub.orchestrator.transfer_stats("agent-a")
        
        assert (stats["received"], stats["accepted"], stats["completed"]) == (1, 1, 1)
        assert stats["avg_transfer_time"] is not None

    @pytest.mark.asyncio
    async def test_system_stats_and_availability(self, hub):
        assert hub.orchestrator.availability("web_development")["available"] is False
        
        await hub.add_agents(make_agent("agent-a", max_chats=2))
        session = await hub.open_session()
        await hub.orchestrator.request_transfer(session.session_id, "customer_request")
        
        stats = await hub.orchestrator.system_stats()
        assert stats["transfers"]["pending"] == 1
        assert stats["workload"]["held_offers"] == 1
        assert stats["queue"]["total"] == 0
        assert hub.orchestrator.availability("web_development")["available_agents"] == 1
