# serverpanel/services/player_tracker.py
"""
In-memory player presence per server.

Presence is reconciled from full roster snapshots: whatever the latest roster
says is the truth, and the diff against the previous state yields joins and
leaves. The tracker is owned by the fleet coordinator and handed to each
supervisor; it is only touched from the event loop thread.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class PlayerPresence:
    server_id: str
    name: str
    join_time: datetime
    last_seen: datetime

    def to_dict(self) -> dict:
        return {
            "server_id": self.server_id,
            "name": self.name,
            "join_time": self.join_time.isoformat(),
            "last_seen": self.last_seen.isoformat(),
        }


@dataclass
class PresenceChange:
    joined: list[str] = field(default_factory=list)
    left: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.joined or self.left)


class PlayerTracker:
    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or _utcnow
        self._players: dict[str, dict[str, PlayerPresence]] = {}

    def add_player(self, server_id: str, name: str) -> bool:
        """Track a player; returns True when the player is new."""
        now = self._clock()
        server_players = self._players.setdefault(server_id, {})
        existing = server_players.get(name)
        if existing is not None:
            existing.last_seen = now
            return False
        server_players[name] = PlayerPresence(server_id, name, now, now)
        return True

    def remove_player(self, server_id: str, name: str) -> bool:
        server_players = self._players.get(server_id)
        if not server_players or name not in server_players:
            return False
        del server_players[name]
        if not server_players:
            del self._players[server_id]
        return True

    def update_players_from_list(self, server_id: str, names: Iterable[str]) -> PresenceChange:
        """Replace the tracked set for a server with ``names``."""
        wanted = list(dict.fromkeys(n.strip() for n in names if n and n.strip()))
        change = PresenceChange()

        for name in list(self._players.get(server_id, {})):
            if name not in wanted and self.remove_player(server_id, name):
                change.left.append(name)

        for name in wanted:
            if self.add_player(server_id, name):
                change.joined.append(name)

        return change

    def clear_server_players(self, server_id: str) -> list[str]:
        """Drop every player of a server; returns the names that left."""
        server_players = self._players.pop(server_id, {})
        return list(server_players)

    def get_player(self, server_id: str, name: str) -> Optional[PlayerPresence]:
        return self._players.get(server_id, {}).get(name)

    def get_players(self, server_id: Optional[str] = None) -> list[PlayerPresence]:
        if server_id is not None:
            return list(self._players.get(server_id, {}).values())
        return [p for players in self._players.values() for p in players.values()]

    def get_player_names(self, server_id: str) -> list[str]:
        return list(self._players.get(server_id, {}))

    def get_player_count(self, server_id: str) -> int:
        return len(self._players.get(server_id, {}))

    def get_total_player_count(self) -> int:
        return sum(len(players) for players in self._players.values())
