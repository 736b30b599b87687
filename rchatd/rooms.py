"""Rooms: named groups of sessions with a replayable history mirror.

A Room is the in-memory cache of a durable room row held by the ledger. It
references its members by session id only; the registry owns both sides.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Iterable

from .codec import RoomRef


class Room:
    """Membership and history for one room. Not thread-safe on its own."""

    def __init__(self, name: str, *, room_id: int | None = None, history_limit: int = 0) -> None:
        self.name = name
        self.id = room_id
        self.members: set[str] = set()
        self.history: deque[str] = deque(maxlen=history_limit if history_limit > 0 else None)

    def __repr__(self) -> str:
        return f"Room(name={self.name!r}, id={self.id}, members={len(self.members)})"

    def ref(self) -> RoomRef:
        return RoomRef(name=self.name, id=self.id)

    def adopt_id(self, room_id: int) -> bool:
        """Record the persisted id. Returns False if a different id is already set."""
        if self.id is None:
            self.id = room_id
            return True
        return self.id == room_id

    def add_member(self, session_id: str) -> None:
        self.members.add(session_id)

    def remove_member(self, session_id: str) -> bool:
        if session_id in self.members:
            self.members.discard(session_id)
            return True
        return False

    def append_history(self, entry: str) -> None:
        self.history.append(entry)

    def seed_history(self, entries: Iterable[str]) -> None:
        """Prepend persisted entries loaded when the cache entry was created."""
        existing = list(self.history)
        self.history.clear()
        self.history.extend(entries)
        self.history.extend(existing)
