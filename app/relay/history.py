"""
Append-only message history, one log per conversation id.

Records are immutable and shared by reference between the store and any
response payload built from it.
"""
from dataclasses import dataclass, asdict
from typing import Dict, List, Tuple

KIND_PRIVATE = "private"


@dataclass(frozen=True)
class MessageRecord:
    """A private message as observed by the relay."""
    id: str
    sender_id: str
    sender_display_name: str
    recipient_id: str
    body: str
    timestamp: str
    kind: str = KIND_PRIVATE

    def to_dict(self) -> dict:
        return asdict(self)


class HistoryStore:
    """Accumulate-only conversation logs; there is no delete or edit."""

    def __init__(self):
        self._conversations: Dict[str, List[MessageRecord]] = {}

    def _sequence(self, conversation_id: str) -> List[MessageRecord]:
        return self._conversations.setdefault(conversation_id, [])

    def append(self, conversation_id: str, record: MessageRecord) -> None:
        self._sequence(conversation_id).append(record)

    def fetch(self, conversation_id: str) -> Tuple[MessageRecord, ...]:
        """Chronological snapshot; empty for a conversation never written to."""
        return tuple(self._sequence(conversation_id))

    def conversation_count(self) -> int:
        return len(self._conversations)

    def message_count(self) -> int:
        return sum(len(seq) for seq in self._conversations.values())
