"""Durable room/message store used by the hub.

The chat core only relies on the ``Ledger`` protocol. ``SqliteLedger`` is the
store the daemon ships with.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from .errors import DirectoryError, PersistenceError


@dataclass(frozen=True)
class RoomRecord:
    id: int
    name: str
    created_at: str = ""


@dataclass(frozen=True)
class StoredMessage:
    id: int
    room_id: int
    sender: str
    content: str
    created_at: str


class Ledger(Protocol):
    def find_room(self, name: str) -> RoomRecord | None: ...

    def create_room(self, name: str) -> RoomRecord: ...

    def append_message(self, room_id: int, sender: str, content: str) -> None: ...

    def recent_messages(self, room_id: int, limit: int) -> list[StoredMessage]: ...


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS rooms (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        name TEXT UNIQUE NOT NULL,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS messages (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        room_id INTEGER NOT NULL,
        sender TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TEXT NOT NULL,
        FOREIGN KEY (room_id) REFERENCES rooms (id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_messages_room ON messages (room_id, id)",
)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class SqliteLedger:
    """
    SQLite-backed ledger.

    One connection shared by every reader thread, serialized by a lock.
    Room creation is idempotent: creating an existing name returns its row.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self.log = logging.getLogger("rchatd.ledger")
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.execute("PRAGMA foreign_keys = ON")
        with self._conn:
            for stmt in _SCHEMA:
                self._conn.execute(stmt)
        self.log.info("Ledger opened path=%s", path)

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    def find_room(self, name: str) -> RoomRecord | None:
        try:
            with self._lock:
                row = self._conn.execute(
                    "SELECT id, name, created_at FROM rooms WHERE name = ?", (name,)
                ).fetchone()
        except sqlite3.Error as e:
            raise DirectoryError(f"error getting room {name}: {e}") from e
        if row is None:
            return None
        return RoomRecord(id=int(row[0]), name=row[1], created_at=row[2])

    def create_room(self, name: str) -> RoomRecord:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO rooms (name, created_at) VALUES (?, ?) "
                    "ON CONFLICT(name) DO NOTHING",
                    (name, _now()),
                )
                row = self._conn.execute(
                    "SELECT id, name, created_at FROM rooms WHERE name = ?", (name,)
                ).fetchone()
        except sqlite3.Error as e:
            raise DirectoryError(f"error creating room {name}: {e}") from e
        if row is None:
            raise DirectoryError(f"error creating room {name}: row missing after insert")
        self.log.info("Room created name=%s id=%s", row[1], row[0])
        return RoomRecord(id=int(row[0]), name=row[1], created_at=row[2])

    def append_message(self, room_id: int, sender: str, content: str) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    "INSERT INTO messages (room_id, sender, content, created_at) "
                    "VALUES (?, ?, ?, ?)",
                    (int(room_id), sender, content, _now()),
                )
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    def recent_messages(self, room_id: int, limit: int) -> list[StoredMessage]:
        """Most recent ``limit`` messages of a room, oldest first (0 = all)."""
        query = (
            "SELECT id, room_id, sender, content, created_at FROM messages "
            "WHERE room_id = ? ORDER BY id DESC"
        )
        args: tuple = (int(room_id),)
        if limit > 0:
            query += " LIMIT ?"
            args = (int(room_id), int(limit))
        try:
            with self._lock:
                rows = self._conn.execute(query, args).fetchall()
        except sqlite3.Error as e:
            raise DirectoryError(f"error reading messages for room {room_id}: {e}") from e
        return [
            StoredMessage(
                id=int(r[0]), room_id=int(r[1]), sender=r[2], content=r[3], created_at=r[4]
            )
            for r in reversed(rows)
        ]
