"""
In-memory presence and private-messaging core.

Nothing here touches the network: handlers return Reactions that the
WebSocket layer (api.websocket_manager) turns into sends and timers.
"""
from relay.engine import Emission, PresenceEngine, Reaction, Target, TargetKind
from relay.history import HistoryStore, MessageRecord
from relay.keying import conversation_id
from relay.registry import IdentityRegistry, UserProfile

__all__ = [
    "Emission", "PresenceEngine", "Reaction", "Target", "TargetKind",
    "HistoryStore", "MessageRecord", "conversation_id",
    "IdentityRegistry", "UserProfile",
]
