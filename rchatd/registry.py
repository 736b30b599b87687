"""Process-wide registry of live sessions and rooms.

Every operation here may be called from any reader thread. All shared state
(session map, room map, identity reservations, each room's members and
history, the hub-wide history) is guarded by one re-entrant lock, so the
operations are totally ordered by lock acquisition.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque

from .codec import Message, RoomRef, encode, make_message
from .constants import SYSTEM_SENDER, T_REGULAR, T_SYSTEM, T_TYPING, TYPING_OFF, TYPING_ON
from .errors import AuthError, DeliveryError, DirectoryError
from .ledger import Ledger, RoomRecord
from .rooms import Room
from .session import Session


class SessionRegistry:
    """
    Owns every live Session and Room and the relationships between them.

    This class is responsible for:
    - Session registration and removal
    - Room cache and the join protocol (ledger find-or-create, membership)
    - Room and hub-wide fan-out with per-recipient failure isolation
    - Typing status de-duplication and notification
    - Identity reservation for self-declared handles
    """

    def __init__(
        self,
        ledger: Ledger,
        *,
        history_limit: int = 500,
        seed_history: bool = True,
    ) -> None:
        self.ledger = ledger
        self.log = logging.getLogger("rchatd.registry")
        self.history_limit = max(0, int(history_limit))
        self.seed_history = seed_history

        self._lock = threading.RLock()
        # Serializes ledger find-or-create so concurrent joins of a new name
        # produce one row. Never held while fanning out.
        self._directory_lock = threading.Lock()

        self.sessions: dict[str, Session] = {}
        self.rooms: dict[str, Room] = {}
        self.reserved: set[str] = set()
        self.history: deque[str] = deque(
            maxlen=self.history_limit if self.history_limit > 0 else None
        )

    # Sessions

    def add_client(self, session_id: str, session: Session) -> None:
        with self._lock:
            previous = self.sessions.get(session_id)
            if previous is not None and previous is not session:
                self.log.warning(
                    "Replacing session id=%s old_identity=%s new_identity=%s",
                    session_id,
                    previous.identity,
                    session.identity,
                )
                self._leave_room_locked(previous, notify=False)
            session.session_id = session_id
            self.sessions[session_id] = session
            self.log.info(
                "Client %s - %s added. Total clients: %d",
                session.identity,
                session_id,
                len(self.sessions),
            )

    def remove_client(self, session_id: str) -> Session | None:
        """Delete a session and drop it from its room in the same locked step."""
        with self._lock:
            session = self.sessions.pop(session_id, None)
            if session is None:
                return None
            self._leave_room_locked(session, notify=False)
            self.log.info(
                "Client %s - %s removed. Total clients: %d",
                session.identity,
                session_id,
                len(self.sessions),
            )
            return session

    def find_by_identity(self, identity: str) -> Session | None:
        with self._lock:
            for session in self.sessions.values():
                if session.identity == identity:
                    return session
            return None

    def identities(self) -> list[str]:
        """Distinct identities of live sessions, sorted."""
        with self._lock:
            return sorted({s.identity for s in self.sessions.values()})

    def reserve_identity(self, identity: str) -> None:
        with self._lock:
            if identity in self.reserved:
                raise AuthError(f"Handle {identity} is already taken.")
            self.reserved.add(identity)

    def release_identity(self, identity: str) -> None:
        with self._lock:
            self.reserved.discard(identity)

    def clear_all(self) -> list[Session]:
        """Forget every session and room. Returns the sessions for teardown."""
        with self._lock:
            sessions = list(self.sessions.values())
            self.sessions.clear()
            self.rooms.clear()
            self.reserved.clear()
            for s in sessions:
                s.room_name = None
            return sessions

    # Delivery

    def _deliver(self, session: Session, data: bytes) -> bool:
        try:
            session.deliver(data)
            return True
        except DeliveryError as e:
            self.log.warning(
                "Error writing message to client %s (%s): %s",
                session.identity,
                session.session_id,
                e,
            )
            return False

    def send_to(self, session: Session, msg: Message | bytes) -> bool:
        """Deliver one frame to one session, serialized with every fan-out."""
        data = msg if isinstance(msg, bytes) else encode(msg)
        with self._lock:
            return self._deliver(session, data)

    def broadcast_all(self, data: bytes) -> int:
        with self._lock:
            self.history.append(data.decode("utf-8", "replace"))
            delivered = 0
            for session in list(self.sessions.values()):
                if self._deliver(session, data):
                    delivered += 1
            return delivered

    # Rooms

    def get_room(self, name: str) -> Room | None:
        with self._lock:
            return self.rooms.get(name)

    def get_or_create_room(self, name: str) -> Room:
        with self._lock:
            return self._get_or_create_room_locked(name)

    def _get_or_create_room_locked(self, name: str) -> Room:
        room = self.rooms.get(name)
        if room is None:
            room = Room(name, history_limit=self.history_limit)
            self.rooms[name] = room
        return room

    def room_history(self, name: str) -> list[str]:
        with self._lock:
            room = self.rooms.get(name)
            return list(room.history) if room is not None else []

    def room_members(self, name: str) -> list[Session]:
        with self._lock:
            room = self.rooms.get(name)
            if room is None:
                return []
            return [self.sessions[sid] for sid in room.members if sid in self.sessions]

    def _notify_room_locked(self, room: Room, text: str, *, exclude: str | None) -> None:
        payload = encode(make_message(T_SYSTEM, text, sender=SYSTEM_SENDER, room=room.ref()))
        for sid in list(room.members):
            if sid == exclude:
                continue
            member = self.sessions.get(sid)
            if member is not None:
                self._deliver(member, payload)

    def notify_room(self, name: str, text: str, *, exclude: str | None = None) -> None:
        """Send a System notice to the room's members without recording it."""
        with self._lock:
            room = self.rooms.get(name)
            if room is not None:
                self._notify_room_locked(room, text, exclude=exclude)

    def _leave_room_locked(self, session: Session, *, notify: bool) -> str | None:
        name = session.room_name
        if name is None:
            return None
        session.room_name = None
        room = self.rooms.get(name)
        if room is not None:
            if session.is_typing:
                self._send_typing_locked(room, session, False)
            room.remove_member(session.session_id)
            if notify:
                self._notify_room_locked(
                    room, f"{session.identity} has left the room.", exclude=None
                )
        session.is_typing = False
        return name

    def _resolve_room(self, name: str) -> tuple[RoomRecord, list[str]]:
        """Find or create the durable room row; never holds the state lock."""
        with self._directory_lock:
            try:
                record = self.ledger.find_room(name)
                if record is None:
                    try:
                        record = self.ledger.create_room(name)
                    except DirectoryError:
                        # Someone else may have created it first.
                        record = self.ledger.find_room(name)
                        if record is None:
                            raise
            except DirectoryError:
                raise
            except Exception as e:
                raise DirectoryError(f"error getting room {name}: {e}") from e

            with self._lock:
                cached = name in self.rooms

            seed: list[str] = []
            if self.seed_history and not cached:
                seed = self._load_seed(record)
            return record, seed

    def _load_seed(self, record: RoomRecord) -> list[str]:
        ref = RoomRef(name=record.name, id=record.id)
        try:
            stored = self.ledger.recent_messages(record.id, self.history_limit)
        except Exception as e:
            self.log.warning("Could not load history for room %s: %s", record.name, e)
            return []
        return [
            Message(
                kind=T_REGULAR,
                content=m.content,
                sender=m.sender,
                id=str(m.id),
                room=ref,
                timestamp=m.created_at,
            ).to_json()
            for m in stored
        ]

    def join_room(self, name: str, session: Session, *, replay: bool = False) -> Room:
        """
        Join ``session`` to room ``name``, creating the room when needed.

        With ``replay`` the room's history is written to the joiner before the
        lock is released, so nothing broadcast afterwards can precede it.

        Raises DirectoryError when the ledger cannot resolve the room; in that
        case the session's membership is untouched.
        """
        self.log.info("Attempting to join room: %s for client: %s", name, session.identity)
        record, seed = self._resolve_room(name)

        with self._lock:
            if session.session_id not in self.sessions:
                raise ValueError(f"session {session.session_id} is not registered")

            created = name not in self.rooms
            room = self._get_or_create_room_locked(name)
            if not room.adopt_id(record.id):
                self.log.warning(
                    "Persisted id mismatch for room %s: cached=%s ledger=%s",
                    name,
                    room.id,
                    record.id,
                )
            if created and seed:
                room.seed_history(seed)

            if session.room_name == name and session.session_id in room.members:
                return room

            self._leave_room_locked(session, notify=True)

            room.add_member(session.session_id)
            session.room_name = name

            self._notify_room_locked(
                room, f"{session.identity} has joined the room.", exclude=session.session_id
            )

            if replay:
                for entry in list(room.history):
                    if not self._deliver(session, entry.encode("utf-8")):
                        break

            self.log.info("Successfully joined room %s", name)
            return room

    def broadcast_to_room(self, room_name: str, data: bytes, sender: str) -> int:
        """
        Append ``data`` to the room's history and deliver it to every member.

        Both steps happen under the lock, so history order always matches the
        order any member observes. A vanished room is logged and ignored.
        """
        with self._lock:
            room = self.rooms.get(room_name)
            if room is None:
                self.log.warning("Room %s does not exist (sender=%s)", room_name, sender)
                return 0

            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug(
                    "Broadcasting to room %s sender=%s bytes=%d recipients=%d",
                    room_name,
                    sender,
                    len(data),
                    len(room.members),
                )

            room.append_history(data.decode("utf-8", "replace"))
            delivered = 0
            for sid in list(room.members):
                member = self.sessions.get(sid)
                if member is not None and self._deliver(member, data):
                    delivered += 1
            return delivered

    # Typing

    def update_typing(self, session: Session, is_typing: bool) -> bool:
        """
        Record a typing state change and tell the other room members.

        Returns False without doing anything when the state is unchanged or
        the session has no room.
        """
        with self._lock:
            if session.is_typing == is_typing:
                return False
            room = self.rooms.get(session.room_name) if session.room_name else None
            if room is None:
                return False

            session.is_typing = is_typing
            session.last_typing_at = time.monotonic()

            self._send_typing_locked(room, session, is_typing)
            return True

    def _send_typing_locked(self, room: Room, session: Session, is_typing: bool) -> None:
        payload = encode(
            make_message(
                T_TYPING,
                TYPING_ON if is_typing else TYPING_OFF,
                sender=session.identity,
                room=room.ref(),
            )
        )
        for sid in list(room.members):
            if sid == session.session_id:
                continue
            member = self.sessions.get(sid)
            if member is not None:
                self._deliver(member, payload)

    def expire_typing(self, timeout_s: float, *, now: float | None = None) -> int:
        """Reset typing flags older than ``timeout_s``. Returns how many were reset."""
        if timeout_s <= 0:
            return 0
        now = time.monotonic() if now is None else now
        expired = 0
        with self._lock:
            for session in list(self.sessions.values()):
                if session.is_typing and now - session.last_typing_at > timeout_s:
                    if self.update_typing(session, False):
                        expired += 1
        return expired
