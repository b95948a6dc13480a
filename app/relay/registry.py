"""
Identity registry: the single source of truth for who is online.

Maps a connection id to the profile announced by that connection. Profiles
are kept in insertion order; listing order is part of the contract and is
never sorted.
"""
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

STATUS_ONLINE = "online"
STATUS_OFFLINE = "offline"

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class UserProfile:
    """Presence profile for one connection."""
    id: str
    display_name: str
    avatar: str
    status: str = STATUS_ONLINE
    last_seen: Optional[datetime] = None

    @property
    def is_online(self) -> bool:
        return self.status != STATUS_OFFLINE

    def to_dict(self) -> dict:
        data = asdict(self)
        data["last_seen"] = self.last_seen.isoformat() if self.last_seen else None
        return data


class IdentityRegistry:
    """
    In-memory registry of user profiles keyed by connection id.

    All operations are synchronous and never raise: an absent id is a
    valid outcome and is handled silently.
    """

    def __init__(self, clock: Clock = utc_now):
        self._clock = clock
        self._profiles: Dict[str, UserProfile] = {}

    def register(self, connection_id: str, display_name: str, avatar: str) -> UserProfile:
        """
        Create or overwrite the profile for a connection.

        Display names are labels, not keys; duplicates are allowed.
        An overwrite keeps the connection's original listing position.
        """
        profile = UserProfile(
            id=connection_id,
            display_name=display_name,
            avatar=avatar,
            status=STATUS_ONLINE,
            last_seen=self._clock(),
        )
        self._profiles[connection_id] = profile
        return profile

    def get(self, connection_id: str) -> Optional[UserProfile]:
        return self._profiles.get(connection_id)

    def list_others(self, exclude_id: str) -> List[UserProfile]:
        return [p for cid, p in self._profiles.items() if cid != exclude_id]

    def list_all(self) -> List[UserProfile]:
        return list(self._profiles.values())

    def update_status(self, connection_id: str, status: str) -> Optional[UserProfile]:
        profile = self._profiles.get(connection_id)
        if profile is None:
            return None
        profile.status = status
        profile.last_seen = self._clock()
        return profile

    def mark_offline(self, connection_id: str) -> Optional[UserProfile]:
        return self.update_status(connection_id, STATUS_OFFLINE)

    def remove(self, connection_id: str) -> None:
        self._profiles.pop(connection_id, None)

    def online_count(self) -> int:
        return sum(1 for p in self._profiles.values() if p.is_online)

    def __contains__(self, connection_id: object) -> bool:
        return connection_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)
