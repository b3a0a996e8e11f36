"""
Notification fan-out for transfer events.
Sends live frames through the delivery layer and lifecycle events to webhooks.
Both are best-effort: failures are logged, never raised. Webhooks are posted
from background tasks so callers never wait on a slow endpoint.
"""

import asyncio
from typing import Any, Protocol

import httpx
import structlog

from handoff_hub.models import Agent, Transfer
from handoff_hub.utils import utcnow

logger = structlog.get_logger(__name__)


class LiveChannel(Protocol):
    """Live delivery to connected agents and customers."""
    
    async def send_to_agent(self, agent_id: str, message: dict[str, Any]) -> bool:
        ...
    
    async def send_to_customer(self, session_id: str, message: dict[str, Any]) -> bool:
        ...


class HandoffNotifier:
    """Notification service for transfer lifecycle events."""
    
    def __init__(
        self,
        channel: LiveChannel | None = None,
        webhooks: list[str] | None = None,
        webhook_timeout_seconds: float = 5.0,
    ) -> None:
        self.channel = channel
        self._webhooks: list[str] = list(webhooks or [])
        self._webhook_timeout = webhook_timeout_seconds
        self._webhook_tasks: set[asyncio.Task] = set()
    
    def attach_channel(self, channel: LiveChannel) -> None:
        self.channel = channel
    
    def add_webhook(self, url: str) -> None:
        self._webhooks.append(url)
    
    async def notify_transfer_request(
        self,
        transfer: Transfer,
        agent: Agent,
        estimated_wait_seconds: int,
    ) -> None:
        """Offer the transfer to the agent and tell the customer a human is coming."""
        await self._to_agent(agent.id, {
            "type": "transfer_request",
            "transferId": transfer.transfer_id,
            "sessionId": transfer.session_id,
            "customerName": transfer.customer_name,
            "serviceType": transfer.service_type,
            "priority": transfer.priority.value,
            "reason": transfer.reason.value,
            "estimatedWaitSeconds": estimated_wait_seconds,
            "context": transfer.context.model_dump(mode="json"),
            "conversationSnapshot": [m.model_dump(mode="json") for m in transfer.conversation_snapshot],
            "timestamp": utcnow().isoformat(),
        })
        
        service = (transfer.service_type or "your request").replace("_", " ")
        await self.notify_customer(
            transfer.session_id,
            "transfer_initiated",
            f"You're being connected to a human agent who specializes in {service}. "
            "Please hold on for just a moment!",
            estimatedWaitSeconds=estimated_wait_seconds,
        )
        
        self._schedule_webhooks("transfer_requested", transfer, agent_id=agent.id)
    
    async def notify_transfer_accepted(self, transfer: Transfer, agent: Agent, handoff_message: str) -> None:
        await self.notify_customer(
            transfer.session_id,
            "transfer_accepted",
            f"Great news! {agent.name} from our {agent.department} team is now here to help you!",
            transferId=transfer.transfer_id,
            agent={"name": agent.name, "department": agent.department},
            handoffMessage=handoff_message,
        )
        self._schedule_webhooks("transfer_accepted", transfer, agent_id=agent.id)
    
    async def notify_transfer_declined(self, transfer: Transfer) -> None:
        await self.notify_customer(
            transfer.session_id,
            "transfer_declined",
            "Looking for the next available agent...",
            transferId=transfer.transfer_id,
        )
        self._schedule_webhooks("transfer_declined", transfer)
    
    async def notify_transfer_failed(self, transfer: Transfer) -> None:
        """Withdraw a stale offer from the agent's queue."""
        await self._to_agent(transfer.to_agent_id, {
            "type": "transfer_cancelled",
            "transferId": transfer.transfer_id,
            "sessionId": transfer.session_id,
            "reason": transfer.failure_reason,
            "timestamp": utcnow().isoformat(),
        })
        self._schedule_webhooks("transfer_failed", transfer)
    
    async def notify_transfer_completed(self, transfer: Transfer) -> None:
        self._schedule_webhooks("transfer_completed", transfer)
    
    async def notify_session_ended(self, session_id: str, agent: Agent) -> None:
        await self.notify_customer(
            session_id,
            "session_ended",
            f"Thank you for chatting with {agent.name}! Your session has ended. "
            "Feel free to start a new conversation anytime.",
        )
    
    async def notify_customer(self, session_id: str, event_type: str, message: str, **extra: Any) -> bool:
        """Send a conversational status frame to the customer."""
        if self.channel is None:
            return False
        return await self.channel.send_to_customer(session_id, {
            "type": event_type,
            "sessionId": session_id,
            "message": message,
            **extra,
            "timestamp": utcnow().isoformat(),
        })
    
    async def _to_agent(self, agent_id: str, message: dict[str, Any]) -> bool:
        if self.channel is None:
            return False
        return await self.channel.send_to_agent(agent_id, message)
    
    async def drain(self) -> None:
        """Wait for webhook deliveries still in flight."""
        if self._webhook_tasks:
            await asyncio.gather(*self._webhook_tasks, return_exceptions=True)
    
    def _schedule_webhooks(self, event: str, transfer: Transfer, **extra: Any) -> None:
        if not self._webhooks:
            return
        
        # Snapshot now; the transfer keeps changing after this returns
        payload = {
            "event": event,
            "transfer_id": transfer.transfer_id,
            "session_id": transfer.session_id,
            "status": transfer.status.value,
            "reason": transfer.reason.value,
            "priority": transfer.priority.value,
            "to_agent_id": transfer.to_agent_id,
            "timestamp": utcnow().isoformat(),
            **extra,
        }
        task = asyncio.create_task(self._send_webhooks(event, payload))
        self._webhook_tasks.add(task)
        task.add_done_callback(self._webhook_tasks.discard)
    
    async def _send_webhooks(self, event: str, payload: dict[str, Any]) -> None:
        """Send to configured webhooks."""
        async with httpx.AsyncClient(timeout=self._webhook_timeout) as client:
            for webhook in list(self._webhooks):
                try:
                    await client.post(webhook, json=payload)
                except httpx.HTTPError as e:
                    logger.warning("webhook_failed", url=webhook, event=event, error=str(e))
