"""
Presence and messaging engine.

Event handlers for one acting connection ("self"). Each handler mutates the
registry and/or history store and returns a Reaction describing what should
be sent and whether the grace-period removal timer must be scheduled or
cancelled. Handlers never await and never touch the transport; the
dispatcher in api.websocket_manager performs the sends.

Per-connection state machine:

    absent --login--> online --disconnect--> offline (pending removal)
      ^                 ^  |                        |
      |                 |  +-- status-update,       |
      |                 |      send-message, ...    |
      |                 +-------- login ------------+
      +---------------------- expire ---------------+
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, List, Optional, Union
from uuid import uuid4

from relay.history import HistoryStore, MessageRecord
from relay.keying import conversation_id
from relay.registry import IdentityRegistry, STATUS_OFFLINE, utc_now

logger = logging.getLogger(__name__)

# Outbound event names
PEER_LIST = "peer-list"
PEER_JOINED = "peer-joined"
PEER_LEFT = "peer-left"
PRIVATE_MESSAGE = "private-message"
MESSAGE_ACK = "message-ack"
HISTORY_RESULT = "history-result"
PEER_TYPING = "peer-typing"
PEER_STOPPED_TYPING = "peer-stopped-typing"
STATUS_CHANGED = "status-changed"


class TargetKind(str, Enum):
    SELF = "self"
    ALL_EXCEPT_SELF = "all_except_self"
    ONE = "one"


@dataclass(frozen=True)
class Target:
    """Destination selector for an emission."""
    kind: TargetKind
    connection_id: Optional[str] = None

    @classmethod
    def to_self(cls) -> "Target":
        return cls(TargetKind.SELF)

    @classmethod
    def all_except_self(cls) -> "Target":
        return cls(TargetKind.ALL_EXCEPT_SELF)

    @classmethod
    def one(cls, connection_id: str) -> "Target":
        return cls(TargetKind.ONE, connection_id)


@dataclass(frozen=True)
class Emission:
    target: Target
    event: str
    payload: Any


@dataclass
class Reaction:
    """Everything a handler wants done after it returns."""
    emissions: List[Emission] = field(default_factory=list)
    schedule_removal: bool = False
    cancel_removal: bool = False

    def emit(self, target: Target, event: str, payload: Any) -> "Reaction":
        self.emissions.append(Emission(target, event, payload))
        return self


def normalize_timestamp(value: Union[str, int, float, None], now: datetime) -> str:
    """
    Return the client timestamp as ISO-8601 if it is well-formed, else `now`.

    Accepts ISO-8601 strings (a trailing 'Z' is allowed, a missing offset
    means UTC) and epoch milliseconds.
    """
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return now.isoformat()
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc).isoformat()
        except (OverflowError, OSError, ValueError):
            return now.isoformat()
    return now.isoformat()


class PresenceEngine:
    """
    Event-driven core of the relay.

    Owns a registry and a history store. Instances are independent, so tests
    can build as many as they need.
    """

    def __init__(
        self,
        registry: Optional[IdentityRegistry] = None,
        history: Optional[HistoryStore] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.clock = clock
        self.registry = registry if registry is not None else IdentityRegistry(clock=clock)
        self.history = history if history is not None else HistoryStore()

    def _peer_list(self, connection_id: str) -> List[dict]:
        return [p.to_dict() for p in self.registry.list_others(connection_id)]

    # ------------------------------------------------------------------
    # Presence
    # ------------------------------------------------------------------

    def login(self, connection_id: str, display_name: str, avatar: str) -> Reaction:
        profile = self.registry.register(connection_id, display_name, avatar)
        logger.info(f"User {display_name} logged in on connection {connection_id}")

        reaction = Reaction(cancel_removal=True)
        reaction.emit(Target.to_self(), PEER_LIST, self._peer_list(connection_id))
        reaction.emit(Target.all_except_self(), PEER_JOINED, profile.to_dict())
        return reaction

    def get_peers(self, connection_id: str) -> Reaction:
        return Reaction().emit(Target.to_self(), PEER_LIST, self._peer_list(connection_id))

    def update_status(self, connection_id: str, status: str) -> Reaction:
        profile = self.registry.update_status(connection_id, status)
        if profile is None:
            return Reaction()

        return Reaction().emit(Target.all_except_self(), STATUS_CHANGED, {
            "user_id": connection_id,
            "status": profile.status,
            "last_seen": profile.last_seen.isoformat(),
        })

    def disconnect(self, connection_id: str) -> Reaction:
        profile = self.registry.mark_offline(connection_id)
        if profile is None:
            # Connection closed without ever logging in
            return Reaction()

        logger.info(f"User {profile.display_name} disconnected ({connection_id})")
        reaction = Reaction(schedule_removal=True)
        reaction.emit(Target.all_except_self(), PEER_LEFT, {
            "user_id": connection_id,
            "display_name": profile.display_name,
            "last_seen": profile.last_seen.isoformat(),
        })
        return reaction

    def expire(self, connection_id: str) -> bool:
        """
        Grace-period timer fired for a connection.

        Removes the profile only if it is still offline; a profile that has
        logged in again since the disconnect is left alone.
        """
        profile = self.registry.get(connection_id)
        if profile is None or profile.status != STATUS_OFFLINE:
            logger.debug(f"Ignoring grace expiry for {connection_id}: no offline profile")
            return False

        self.registry.remove(connection_id)
        logger.info(f"Removed offline user {profile.display_name} ({connection_id})")
        return True

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    def send_message(
        self,
        connection_id: str,
        recipient_id: str,
        body: str,
        client_timestamp: Union[str, int, float, None] = None,
    ) -> Reaction:
        sender = self.registry.get(connection_id)
        if sender is None:
            logger.debug(f"Dropping message from unregistered connection {connection_id}")
            return Reaction()

        record = MessageRecord(
            id=str(uuid4()),
            sender_id=connection_id,
            sender_display_name=sender.display_name,
            recipient_id=recipient_id,
            body=body,
            timestamp=normalize_timestamp(client_timestamp, self.clock()),
        )
        self.history.append(conversation_id(connection_id, recipient_id), record)

        reaction = Reaction()
        payload = record.to_dict()
        if recipient_id in self.registry:
            reaction.emit(Target.one(recipient_id), PRIVATE_MESSAGE, payload)
        reaction.emit(Target.to_self(), MESSAGE_ACK, payload)

        logger.info(f"Private message {record.id} from {connection_id} to {recipient_id}")
        return reaction

    def get_history(self, connection_id: str, other_id: str) -> Reaction:
        records = self.history.fetch(conversation_id(connection_id, other_id))
        return Reaction().emit(Target.to_self(), HISTORY_RESULT, {
            "other_id": other_id,
            "messages": [r.to_dict() for r in records],
        })

    # ------------------------------------------------------------------
    # Typing indicators (transient, never recorded)
    # ------------------------------------------------------------------

    def typing_start(self, connection_id: str, recipient_id: str) -> Reaction:
        sender = self.registry.get(connection_id)
        if sender is None or recipient_id not in self.registry:
            return Reaction()

        return Reaction().emit(Target.one(recipient_id), PEER_TYPING, {
            "user_id": connection_id,
            "display_name": sender.display_name,
        })

    def typing_stop(self, connection_id: str, recipient_id: str) -> Reaction:
        if connection_id not in self.registry or recipient_id not in self.registry:
            return Reaction()

        return Reaction().emit(Target.one(recipient_id), PEER_STOPPED_TYPING, {
            "user_id": connection_id,
        })
