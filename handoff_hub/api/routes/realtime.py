"""
WebSocket endpoint for agents and customers.
"""

import structlog
from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from handoff_hub.core.realtime import DeliveryLayer

logger = structlog.get_logger(__name__)
router = APIRouter(tags=["Realtime"])


@router.websocket("/ws")
async def realtime_ws(websocket: WebSocket):
    """
    Duplex channel for live chat.
    
    The first frame must be ``authenticate`` (agent credential or customer
    session id); anything else is rejected until then.
    """
    delivery: DeliveryLayer = websocket.app.state.services.delivery
    connection = await delivery.connect(websocket)
    
    try:
        while connection.is_open:
            try:
                frame = await websocket.receive_json()
            except ValueError:
                frame = None
            await delivery.handle(connection, frame)
    
    except WebSocketDisconnect as e:
        logger.debug("websocket_disconnected", connection_id=connection.connection_id, code=e.code)
    
    finally:
        await delivery.disconnect(connection)
