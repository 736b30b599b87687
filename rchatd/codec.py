from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from .constants import (
    C_HELP,
    C_INVALID,
    C_JOIN,
    C_USERS,
    COMMAND_NAMES,
    E_BAD_DM,
    E_BAD_FORMAT,
    E_BAD_JOIN,
    E_EMPTY_CHAT,
    E_UNKNOWN_COMMAND,
    E_UNKNOWN_TYPE,
    K_COMMAND,
    K_CONTENT,
    K_ID,
    K_ROOM,
    K_SENDER,
    K_TARGET,
    K_TOKEN,
    K_TS,
    K_TYPE,
    R_ID,
    R_NAME,
    T_COMMAND,
    T_DIRECT,
    T_INVALID,
    T_REGULAR,
    T_TYPING,
)
from .errors import ProtocolError

_TRUTHY = frozenset({"true", "1", "yes", "on", "start", "typing"})


@dataclass(frozen=True)
class RoomRef:
    """The ``room`` object carried by a frame."""

    name: str
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {R_ID: self.id if self.id is not None else 0, R_NAME: self.name}


@dataclass(frozen=True)
class Message:
    """A classified frame.

    ``kind`` is one of the ``T_*`` constants. Optional fields use their empty
    value when absent and are omitted on serialization.
    """

    kind: str
    content: str = ""
    sender: str = ""
    id: str = ""
    room: RoomRef | None = None
    target: str = ""
    timestamp: str = ""
    command: int = C_INVALID

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            K_TYPE: self.kind,
            K_CONTENT: self.content,
            K_SENDER: self.sender,
            K_ID: self.id,
        }
        if self.room is not None:
            d[K_ROOM] = self.room.to_dict()
        if self.target:
            d[K_TARGET] = self.target
        if self.timestamp:
            d[K_TS] = self.timestamp
        if self.command:
            d[K_COMMAND] = self.command
        return d

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, separators=(",", ":"))


def msg_id() -> str:
    return str(uuid.uuid4())


def now_rfc3339() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


def make_message(
    kind: str,
    content: str,
    *,
    sender: str,
    room: RoomRef | None = None,
    target: str = "",
) -> Message:
    """Build an outbound frame stamped with a fresh id and timestamp."""
    return Message(
        kind=kind,
        content=content,
        sender=sender,
        id=msg_id(),
        room=room,
        target=target,
        timestamp=now_rfc3339(),
    )


def encode(msg: Message) -> bytes:
    return msg.to_json().encode("utf-8")


def _invalid(text: str) -> Message:
    return Message(kind=T_INVALID, content=text)


# Fields that must be JSON strings when present. ``null`` means absent.
_STRING_FIELDS = (K_TYPE, K_CONTENT, K_SENDER, K_ID, K_TARGET, K_TS)


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _check_field_types(obj: dict[str, Any]) -> None:
    for key in _STRING_FIELDS:
        value = obj.get(key)
        if value is not None and not isinstance(value, str):
            raise ProtocolError(E_BAD_FORMAT)

    command = obj.get(K_COMMAND)
    if command is not None and not _is_int(command):
        raise ProtocolError(E_BAD_FORMAT)

    room = obj.get(K_ROOM)
    if room is None or isinstance(room, str):
        return
    if not isinstance(room, dict):
        raise ProtocolError(E_BAD_FORMAT)
    name = room.get(R_NAME)
    rid = room.get(R_ID)
    if (name is not None and not isinstance(name, str)) or (
        rid is not None and not _is_int(rid)
    ):
        raise ProtocolError(E_BAD_FORMAT)


def _decode(raw: str | bytes) -> dict[str, Any]:
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = bytes(raw).decode("utf-8")
        obj = json.loads(raw)
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        # RecursionError: deeply nested arrays/objects exhaust the decoder.
        raise ProtocolError(E_BAD_FORMAT) from e

    if not isinstance(obj, dict):
        raise ProtocolError(E_BAD_FORMAT)
    return obj


def _room_ref(value: Any) -> RoomRef | None:
    # Older clients send the room as a bare string.
    if isinstance(value, str):
        name = value.strip()
        return RoomRef(name=name) if name else None
    if isinstance(value, dict):
        name = (value.get(R_NAME) or "").strip()
        if not name:
            return None
        rid = value.get(R_ID)
        return RoomRef(name=name, id=rid if rid is not None and rid > 0 else None)
    return None


def _parse_command(obj: dict[str, Any]) -> Message:
    name = (obj.get(K_CONTENT) or "").strip().lower()
    cmd = COMMAND_NAMES.get(name)
    if cmd is None and not name and obj.get(K_COMMAND) in (C_HELP, C_USERS, C_JOIN):
        cmd = obj[K_COMMAND]

    if cmd == C_HELP:
        return Message(kind=T_COMMAND, content="help", command=C_HELP)
    if cmd == C_USERS:
        return Message(kind=T_COMMAND, content="users", command=C_USERS)
    if cmd == C_JOIN:
        room = _room_ref(obj.get(K_ROOM))
        if room is None:
            raise ProtocolError(E_BAD_JOIN)
        return Message(kind=T_COMMAND, content=room.name, room=room, command=C_JOIN)
    raise ProtocolError(E_UNKNOWN_COMMAND)


def _classify(obj: dict[str, Any]) -> Message:
    kind = obj.get(K_TYPE)
    content = obj.get(K_CONTENT) or ""

    if kind == T_DIRECT:
        target = obj.get(K_TARGET) or ""
        if not target or not content:
            raise ProtocolError(E_BAD_DM)
        return Message(kind=T_DIRECT, content=content, target=target)

    if kind == T_COMMAND:
        return _parse_command(obj)

    if kind == T_REGULAR:
        if not content:
            raise ProtocolError(E_EMPTY_CHAT)
        return Message(kind=T_REGULAR, content=content, room=_room_ref(obj.get(K_ROOM)))

    if kind == T_TYPING:
        return Message(kind=T_TYPING, content=content, room=_room_ref(obj.get(K_ROOM)))

    raise ProtocolError(E_UNKNOWN_TYPE)


def parse_message(raw: str | bytes) -> Message:
    """Classify one inbound frame.

    Never raises: every malformed or semantically invalid frame comes back as
    an ``invalid`` message whose content is the diagnostic for the sender.
    A field of the wrong JSON type is a format error, not an empty value.
    """
    try:
        obj = _decode(raw)
        _check_field_types(obj)
        return _classify(obj)
    except ProtocolError as e:
        return _invalid(str(e))


def parse_typing_flag(content: str) -> bool:
    return content.strip().lower() in _TRUTHY


def parse_handshake(raw: str | bytes) -> str | None:
    """Extract the credential from a handshake frame ``{"token": ...}``."""
    try:
        obj = _decode(raw)
    except ProtocolError:
        return None
    token = obj.get(K_TOKEN)
    if not isinstance(token, str) or not token.strip():
        return None
    return token
