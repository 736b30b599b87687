from __future__ import annotations

import json
import queue
import threading
import time
from dataclasses import replace

import pytest

from rchatd.config import HubRuntimeConfig
from rchatd.errors import DeliveryError, DirectoryError, PersistenceError, TransportError
from rchatd.ledger import RoomRecord, StoredMessage
from rchatd.registry import SessionRegistry
from rchatd.session import Session


class FakeTransport:
    """In-memory transport: frames pushed by the test, writes recorded."""

    def __init__(self, name: str = "fake", *, token: str | None = None) -> None:
        self.name = name
        self.token = token
        self.sent: list[bytes] = []
        self.closed = False
        self.fail_sends = False
        self._inbox: queue.Queue[bytes | None] = queue.Queue()

    def push(self, frame) -> None:
        if isinstance(frame, dict):
            frame = json.dumps(frame)
        if isinstance(frame, str):
            frame = frame.encode("utf-8")
        self._inbox.put(frame)

    def hangup(self) -> None:
        self._inbox.put(None)

    def recv(self) -> bytes:
        try:
            data = self._inbox.get(timeout=5.0)
        except queue.Empty as e:
            raise TransportError("read timeout") from e
        if data is None:
            self._inbox.put(None)
            raise TransportError("closed")
        return data

    def send(self, data: bytes) -> None:
        if self.fail_sends:
            raise DeliveryError("broken pipe")
        self.sent.append(data)

    def close(self) -> None:
        self.closed = True

    def credential(self) -> str | None:
        return self.token

    def describe(self) -> str:
        return self.name

    def messages(self) -> list[dict]:
        return [json.loads(d) for d in self.sent]

    def contents(self, kind: str | None = None) -> list[str]:
        return [m["content"] for m in self.messages() if kind is None or m["type"] == kind]


class MemoryLedger:
    def __init__(self) -> None:
        self.rooms: dict[str, RoomRecord] = {}
        self.messages: list[StoredMessage] = []
        self.create_calls = 0
        self.fail_find = False
        self.fail_append = False
        self._lock = threading.Lock()

    def find_room(self, name: str) -> RoomRecord | None:
        if self.fail_find:
            raise DirectoryError("ledger unavailable")
        with self._lock:
            return self.rooms.get(name)

    def create_room(self, name: str) -> RoomRecord:
        self.create_calls += 1
        # Widen the window between lookup and insert.
        time.sleep(0.01)
        with self._lock:
            if name in self.rooms:
                raise DirectoryError(f"UNIQUE constraint failed: rooms.name ({name})")
            record = RoomRecord(id=len(self.rooms) + 1, name=name)
            self.rooms[name] = record
            return record

    def append_message(self, room_id: int, sender: str, content: str) -> None:
        if self.fail_append:
            raise PersistenceError("disk full")
        with self._lock:
            self.messages.append(
                StoredMessage(
                    id=len(self.messages) + 1,
                    room_id=room_id,
                    sender=sender,
                    content=content,
                    created_at="2026-01-01T00:00:00+00:00",
                )
            )

    def recent_messages(self, room_id: int, limit: int) -> list[StoredMessage]:
        with self._lock:
            rows = [m for m in self.messages if m.room_id == room_id]
        return rows[-limit:] if limit > 0 else rows


@pytest.fixture
def ledger() -> MemoryLedger:
    return MemoryLedger()


@pytest.fixture
def registry(ledger: MemoryLedger) -> SessionRegistry:
    return SessionRegistry(ledger, history_limit=0)


@pytest.fixture
def config() -> HubRuntimeConfig:
    return replace(
        HubRuntimeConfig(),
        default_room=None,
        outbound_queue_size=0,
        rate_limit_msgs_per_minute=0,
        typing_timeout_s=0.0,
    )


def connect(registry: SessionRegistry, identity: str) -> Session:
    session = Session(identity, FakeTransport(identity))
    registry.add_client(session.session_id, session)
    return session


def sent(session: Session) -> FakeTransport:
    assert isinstance(session.transport, FakeTransport)
    return session.transport
