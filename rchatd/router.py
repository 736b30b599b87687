from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .codec import Message, encode, make_message, parse_message, parse_typing_flag
from .constants import (
    C_HELP,
    C_JOIN,
    C_USERS,
    HELP_TEXT,
    LEAVE_ALL,
    LEAVE_ROOM,
    MSG_JOIN_FIRST,
    MSG_RATE_LIMITED,
    SYSTEM_SENDER,
    T_COMMAND,
    T_DIRECT,
    T_INVALID,
    T_REGULAR,
    T_SYSTEM,
    T_TYPING,
)
from .errors import AuthError, DeliveryError, DirectoryError, PersistenceError, TransportError
from .session import S_ACTIVE, S_AUTHENTICATING, S_CLOSED, Session, Transport
from .util import normalize_room

if TYPE_CHECKING:
    from .auth import Authenticator
    from .config import HubRuntimeConfig
    from .ledger import Ledger
    from .registry import SessionRegistry


class MessageRouter:
    """
    Runs the per-connection protocol loop for the hub.

    This class is responsible for:
    - Authenticating a new connection and registering its Session
    - Reading frames, classifying them and dispatching by kind
    - Replying to the sender with System frames for errors and commands
    - Tearing the session down when its transport read fails

    ``serve`` blocks for the lifetime of the connection and is meant to run on
    a dedicated thread per connection.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        ledger: Ledger,
        authenticator: Authenticator,
        config: HubRuntimeConfig,
    ) -> None:
        self.registry = registry
        self.ledger = ledger
        self.authenticator = authenticator
        self.config = config
        self.log = logging.getLogger("rchatd.router")

    def serve(self, transport: Transport) -> None:
        """Drive one connection from CONNECTING to CLOSED."""
        session = Session(
            "",
            transport,
            queue_size=int(self.config.outbound_queue_size),
            rate_limit_per_minute=int(self.config.rate_limit_msgs_per_minute),
        )
        if not self.authenticate(session):
            return

        self.registry.add_client(session.session_id, session)
        session.start_writer()
        session.state = S_ACTIVE

        try:
            self._on_active(session)
            while True:
                data = transport.recv()
                self.handle_frame(session, data)
        except TransportError as e:
            self.log.info(
                "Error reading message from %s transport=%s: %s",
                session.identity,
                transport.describe(),
                e,
            )
        finally:
            self.teardown(session)

    def authenticate(self, session: Session) -> bool:
        """
        Resolve the session's identity from its transport credential.

        Returns False when the connection is refused; the transport is closed
        and the session never reaches the registry.
        """
        transport = session.transport
        session.state = S_AUTHENTICATING
        try:
            session.identity = self.authenticator.authenticate(transport.credential())
        except AuthError as e:
            self.log.info("Auth failed transport=%s err=%s", transport.describe(), e)
            session.state = S_CLOSED
            self._reject(transport, str(e))
            return False
        except TransportError as e:
            self.log.info("Closed during auth transport=%s err=%s", transport.describe(), e)
            session.state = S_CLOSED
            transport.close()
            return False
        return True

    def _reject(self, transport: Transport, reason: str) -> None:
        msg = make_message(T_SYSTEM, reason, sender=SYSTEM_SENDER)
        try:
            transport.send(encode(msg))
        except DeliveryError as e:
            self.log.debug("Could not send auth failure: %s", e)
        transport.close()

    def _on_active(self, session: Session) -> None:
        if self.config.greeting:
            self.reply(session, self.config.greeting)
        if self.config.default_room:
            self._handle_join(session, self.config.default_room)

    def teardown(self, session: Session) -> None:
        """Remove the session, release its identity and announce the departure."""
        session.state = S_CLOSED
        old_room = session.room_name
        self.registry.remove_client(session.session_id)
        self.authenticator.release(session.identity)

        scope = self.config.leave_notice
        if scope == LEAVE_ROOM and old_room:
            self.registry.notify_room(old_room, f"{session.identity} has left the room.")
        elif scope == LEAVE_ALL:
            notice = make_message(
                T_SYSTEM, f"{session.identity} has left the chat.", sender=SYSTEM_SENDER
            )
            self.registry.broadcast_all(encode(notice))

        session.stop_writer()
        session.transport.close()

    def reply(self, session: Session, text: str) -> None:
        room = self.registry.get_room(session.room_name) if session.room_name else None
        msg = make_message(
            T_SYSTEM,
            text,
            sender=SYSTEM_SENDER,
            room=room.ref() if room is not None else None,
        )
        self.registry.send_to(session, msg)

    def handle_frame(self, session: Session, data: bytes | str) -> None:
        """Classify and dispatch one inbound frame for an active session."""
        if not session.refill_and_take(1.0):
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Rate limited identity=%s", session.identity)
            self.reply(session, MSG_RATE_LIMITED)
            return

        try:
            msg = parse_message(data)
            if self.log.isEnabledFor(logging.DEBUG):
                self.log.debug(
                    "RX identity=%s type=%s room=%r content_len=%d",
                    session.identity,
                    msg.kind,
                    session.room_name,
                    len(msg.content),
                )
            self._dispatch(session, msg)
        except TransportError:
            raise
        except Exception as e:
            self.log.exception("Error handling message from %s", session.identity)
            self.reply(session, f"Error handling message: {e}")

    def _dispatch(self, session: Session, msg: Message) -> None:
        if msg.kind == T_REGULAR:
            self._handle_regular(session, msg)
        elif msg.kind == T_DIRECT:
            self._handle_direct(session, msg)
        elif msg.kind == T_COMMAND:
            self._handle_command(session, msg)
        elif msg.kind == T_TYPING:
            self.registry.update_typing(session, parse_typing_flag(msg.content))
        elif msg.kind == T_INVALID:
            self.reply(session, msg.content)

    def _handle_regular(self, session: Session, msg: Message) -> None:
        room_name = session.room_name
        room = self.registry.get_room(room_name) if room_name else None
        if room is None:
            self.reply(session, MSG_JOIN_FIRST)
            return

        out = make_message(T_REGULAR, msg.content, sender=session.identity, room=room.ref())
        self.log.info("[%s] %s: %s", room.name, session.identity, msg.content)
        self.registry.broadcast_to_room(room.name, encode(out), session.identity)

        # Delivery and durability are decoupled: a failed append is reported
        # but the broadcast stands.
        if room.id is None:
            self.log.warning("Room %s has no persisted id; message not saved", room.name)
            return
        try:
            self.ledger.append_message(room.id, session.identity, msg.content)
        except PersistenceError as e:
            self.log.warning("Error saving message to ledger room=%s: %s", room.name, e)
            self.reply(session, f"Error saving message: {e}")

    def _handle_direct(self, session: Session, msg: Message) -> None:
        self.log.info("[DM from %s to %s]", session.identity, msg.target)
        target = self.registry.find_by_identity(msg.target)
        if target is None:
            self.reply(session, f"User {msg.target} not found.")
            return
        out = make_message(T_DIRECT, msg.content, sender=session.identity, target=msg.target)
        self.registry.send_to(target, out)

    def _handle_command(self, session: Session, msg: Message) -> None:
        if msg.command == C_HELP:
            self.reply(session, HELP_TEXT)
        elif msg.command == C_USERS:
            self.reply(session, "\n".join(self.registry.identities()))
        elif msg.command == C_JOIN:
            self._handle_join(session, msg.content)

    def _handle_join(self, session: Session, name: str) -> None:
        try:
            room_name = normalize_room(name, max_len=int(self.config.max_room_name_len))
        except ValueError as e:
            self.reply(session, f"Failed to join room: {e}")
            return

        try:
            room = self.registry.join_room(
                room_name, session, replay=bool(self.config.replay_history)
            )
        except DirectoryError as e:
            self.log.warning("Failed to join room %s for %s: %s", room_name, session.identity, e)
            self.reply(session, f"Failed to join room: {e}")
            return

        self.log.info("JOIN identity=%s room=%s id=%s", session.identity, room.name, room.id)
        self.reply(session, f"You have joined the room: {room.name}")
