"""Socket handlers that let connected agents drive the transfer state machine."""

from typing import Any

from handoff_hub.core.handoff import TransferOrchestrator
from handoff_hub.core.realtime.connection_registry import ClientConnection
from handoff_hub.core.realtime.delivery import DeliveryLayer, parse_payload, require_agent
from handoff_hub.core.realtime.messages import StatusUpdatePayload, TransferActionPayload
from handoff_hub.utils import utcnow


def register_transfer_actions(delivery: DeliveryLayer, orchestrator: TransferOrchestrator) -> None:
    """Wire ``status_update``, ``accept_transfer`` and ``decline_transfer`` frames."""
    
    async def on_status_update(connection: ClientConnection, payload: Any) -> dict[str, Any]:
        agent_id = require_agent(connection)
        update = parse_payload(StatusUpdatePayload, payload)
        agent = await orchestrator.set_agent_status(agent_id, update.status)
        return {
            "type": "status_updated",
            "status": agent.status.value,
            "timestamp": utcnow().isoformat(),
        }
    
    async def on_accept_transfer(connection: ClientConnection, payload: Any) -> dict[str, Any]:
        agent_id = require_agent(connection)
        action = parse_payload(TransferActionPayload, payload)
        result = await orchestrator.accept_transfer(action.transfer_id, agent_id, action.handoff_message)
        return {
            "type": "assignment_confirmed",
            "transferId": result.transfer.transfer_id,
            "sessionId": result.transfer.session_id,
            "transfer": result.transfer.model_dump(mode="json"),
            "timestamp": utcnow().isoformat(),
        }
    
    async def on_decline_transfer(connection: ClientConnection, payload: Any) -> dict[str, Any]:
        agent_id = require_agent(connection)
        action = parse_payload(TransferActionPayload, payload)
        result = await orchestrator.decline_transfer(action.transfer_id, agent_id, action.reason)
        return {
            "type": "transfer_declined",
            "transferId": result.transfer_id,
            "rerouted": result.rerouted,
            "escalated": result.escalated,
            "timestamp": utcnow().isoformat(),
        }
    
    delivery.register_handler("status_update", on_status_update)
    delivery.register_handler("accept_transfer", on_accept_transfer)
    delivery.register_handler("decline_transfer", on_decline_transfer)
    delivery.set_pending_transfers_provider(orchestrator.get_pending_transfers)
