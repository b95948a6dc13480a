"""
Pydantic schemas for WebSocket frames and HTTP responses.

Inbound frames are JSON objects of the form {"action": <name>, ...fields};
each action's fields are validated by the matching command model below.
Outbound frames are wrapped in WSEvent.
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Type, Union
from pydantic import BaseModel, Field, ConfigDict
from relay.keying import SEPARATOR

# Peer ids must not contain the conversation key separator
PEER_ID_PATTERN = rf"^[^{SEPARATOR}]+$"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# Inbound Commands (Client -> Server)
class WSCommand(BaseModel):
    """Base for inbound commands; unknown fields are ignored."""
    model_config = ConfigDict(extra="ignore")


class WSLogin(WSCommand):
    """
    Announce identity for this connection.

    Example:
        ```json
        {"action": "login", "display_name": "Alice", "avatar": null}
        ```
    """
    display_name: str = Field(..., min_length=1, max_length=64, description="Display label (not unique)")
    avatar: Optional[str] = Field(None, max_length=2048, description="Avatar URL; generated when omitted")


class WSGetPeers(WSCommand):
    """Request the current list of other users."""


class WSSendMessage(WSCommand):
    """
    Send a private message.

    Example:
        ```json
        {"action": "send-message", "recipient_id": "c2", "body": "hi",
         "client_timestamp": "2024-01-01T12:00:00Z"}
        ```
    """
    recipient_id: str = Field(..., min_length=1, pattern=PEER_ID_PATTERN, description="Recipient connection id")
    body: str = Field(..., description="Message text")
    client_timestamp: Optional[Union[int, float, str]] = Field(
        None, description="ISO-8601 string or epoch milliseconds"
    )


class WSGetHistory(WSCommand):
    """Request the conversation history with another connection."""
    other_id: str = Field(..., min_length=1, pattern=PEER_ID_PATTERN, description="Other participant's connection id")


class WSTyping(WSCommand):
    """typing-start / typing-stop signal."""
    recipient_id: str = Field(..., min_length=1, pattern=PEER_ID_PATTERN, description="Recipient connection id")


class WSStatusUpdate(WSCommand):
    """Set a free-form status (e.g. "away", "busy")."""
    status: str = Field(..., min_length=1, max_length=32, description="New status")


COMMANDS: Dict[str, Type[WSCommand]] = {
    "login": WSLogin,
    "get-peers": WSGetPeers,
    "send-message": WSSendMessage,
    "get-history": WSGetHistory,
    "typing-start": WSTyping,
    "typing-stop": WSTyping,
    "status-update": WSStatusUpdate,
}


# Outbound Events (Server -> Client)
class WSEvent(BaseModel):
    """Envelope for every outbound frame."""
    type: str = Field(..., description="Event type")
    payload: Any = Field(None, description="Event payload")
    timestamp: datetime = Field(default_factory=_utcnow, description="Event timestamp")


class WSConnected(BaseModel):
    """Welcome payload carrying the connection id assigned by the server."""
    connection_id: str = Field(..., description="Connection id, also the user id for this session")


# HTTP Schemas
class UserProfileResponse(BaseModel):
    """A registry profile as exposed over HTTP."""
    id: str
    display_name: str
    avatar: str
    status: str
    last_seen: Optional[datetime] = None


class HealthResponse(BaseModel):
    """Status query result."""
    server_state: str = Field("ok", description="Always 'ok' while the process serves requests")
    online_count: int = Field(..., description="Profiles not marked offline")
    uptime: float = Field(..., description="Seconds since startup")


class UserListResponse(BaseModel):
    users: List[UserProfileResponse]
    total: int
