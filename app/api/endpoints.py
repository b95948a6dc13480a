"""
API endpoint implementations.
Defines the WebSocket relay endpoint and the user listing endpoint.
"""
import logging
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from api.dependencies import get_hub
from api.schemas import UserListResponse, UserProfileResponse, WSConnected, WSEvent
from api.websocket_manager import RelayHub

logger = logging.getLogger(__name__)

# Create routers
users_router = APIRouter()
websocket_router = APIRouter()


@users_router.get("/users", response_model=UserListResponse)
async def list_users(hub: RelayHub = Depends(get_hub)):
    """
    List every profile in the registry.

    Includes users that disconnected recently and are still inside the
    grace period (status "offline").
    """
    users = [
        UserProfileResponse(**profile.to_dict())
        for profile in hub.engine.registry.list_all()
    ]
    return UserListResponse(users=users, total=len(users))


# WebSocket Endpoint
@websocket_router.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket, hub: RelayHub = Depends(get_hub)):
    """
    WebSocket endpoint for presence and private messaging.

    Connection Flow:
        1. Client connects: ws://host/ws
        2. Server assigns a connection id and sends {"type": "connected"}
        3. Client logs in: {"action": "login", "display_name": "Alice"}
        4. Client sends commands; server pushes events
        5. On disconnect the profile is marked offline and removed after
           the grace period

    WebSocket Commands (Client -> Server):
        - login: {"action": "login", "display_name": str, "avatar": str?}
        - get-peers: {"action": "get-peers"}
        - send-message: {"action": "send-message", "recipient_id": str, "body": str,
                         "client_timestamp": str|int?}
        - get-history: {"action": "get-history", "other_id": str}
        - typing-start / typing-stop: {"action": ..., "recipient_id": str}
        - status-update: {"action": "status-update", "status": str}

    WebSocket Events (Server -> Client), as {"type", "payload", "timestamp"}:
        - connected, peer-list, peer-joined, peer-left, private-message,
          message-ack, history-result, peer-typing, peer-stopped-typing,
          status-changed

    Invalid and binary frames are dropped silently.
    """
    connection_id = await hub.connect(websocket)
    reason = "normal"

    try:
        welcome = WSEvent(type="connected", payload=WSConnected(connection_id=connection_id).model_dump())
        await hub.connections.send_to(connection_id, welcome.model_dump(mode="json"))

        # Message loop
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))

            data = message.get("text")
            if data is None:
                hub.drop(connection_id, "binary_frame")
                continue

            try:
                await hub.dispatch(connection_id, data)
            except Exception:
                logger.exception(f"Error processing frame from connection {connection_id}")

    except WebSocketDisconnect:
        logger.info(f"Connection {connection_id} disconnected from WebSocket")
    except Exception as e:
        reason = "error"
        logger.error(f"WebSocket error for connection {connection_id}: {e}")
    finally:
        await hub.on_disconnect(connection_id, reason=reason)
