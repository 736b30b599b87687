from __future__ import annotations

import logging
import os
import queue
import signal
import threading
import time
from pathlib import Path

import cbor2
import RNS

from . import __version__
from .auth import Authenticator, HandleAuthenticator, IdentityAuthenticator, TrustList
from .codec import parse_handshake
from .config import HubRuntimeConfig, ensure_private_dir, validate_config
from .constants import MODE_HANDLE, RCHAT_VERSION
from .errors import DeliveryError, TransportError
from .ledger import SqliteLedger
from .registry import SessionRegistry
from .router import MessageRouter
from .util import expand_path


def fmt_link_id(link: RNS.Link) -> str:
    lid = getattr(link, "link_id", None)
    if isinstance(lid, (bytes, bytearray)):
        return bytes(lid).hex()
    h = getattr(link, "hash", None)
    if isinstance(h, (bytes, bytearray)):
        return bytes(h).hex()
    return "-"


class LinkTransport:
    """
    Adapts one RNS.Link to the blocking Transport interface.

    Reticulum delivers packets and resources through callbacks on its own
    threads; they are queued here and consumed by the link's reader thread.
    """

    def __init__(
        self,
        link: RNS.Link,
        *,
        handle_mode: bool,
        identify_timeout_s: float,
        max_resource_bytes: int,
    ) -> None:
        self.link = link
        self.handle_mode = handle_mode
        self.identify_timeout_s = identify_timeout_s
        self.max_resource_bytes = max_resource_bytes
        self.log = logging.getLogger("rchatd.transport")

        self.peer_hash: bytes | None = None
        self._inbox: queue.Queue[bytes | None] = queue.Queue()
        self._identified = threading.Event()
        self._closed = threading.Event()

    def describe(self) -> str:
        return fmt_link_id(self.link)

    # Reticulum callbacks

    def attach(self) -> None:
        self.link.set_packet_callback(lambda data, pkt: self._on_packet(data))
        self.link.set_link_closed_callback(lambda closed_link: self._on_closed())
        self.link.set_remote_identified_callback(
            lambda identified_link, ident: self._on_identified(ident)
        )
        try:
            self.link.set_resource_strategy(RNS.Link.ACCEPT_APP)
            self.link.set_resource_callback(self._on_resource_advertised)
            self.link.set_resource_concluded_callback(self._on_resource_concluded)
        except Exception as e:
            self.log.warning(
                "Failed to set resource callbacks link_id=%s: %s", self.describe(), e
            )

    def _on_packet(self, data: bytes) -> None:
        self._inbox.put(bytes(data))

    def _on_identified(self, identity: RNS.Identity | None) -> None:
        if identity is not None:
            self.peer_hash = bytes(identity.hash)
        self._identified.set()

    def _on_closed(self) -> None:
        self._closed.set()
        self._identified.set()
        self._inbox.put(None)

    def _on_resource_advertised(self, resource: RNS.Resource) -> bool:
        size = resource.total_size if hasattr(resource, "total_size") else resource.size
        if size > self.max_resource_bytes:
            self.log.warning(
                "Rejecting resource (too large: %s > %s) link_id=%s",
                size,
                self.max_resource_bytes,
                self.describe(),
            )
            return False
        return True

    def _on_resource_concluded(self, resource: RNS.Resource) -> None:
        if resource.status != RNS.Resource.COMPLETE:
            self.log.warning(
                "Resource transfer failed link_id=%s status=%s",
                self.describe(),
                resource.status,
            )
            return
        payload = resource.data.read() if hasattr(resource.data, "read") else resource.data
        self._inbox.put(bytes(payload))

    # Transport interface

    def recv(self) -> bytes:
        data = self._inbox.get()
        if data is None:
            # Keep the sentinel so later reads fail the same way.
            self._inbox.put(None)
            raise TransportError("link closed")
        return data

    def send(self, data: bytes) -> None:
        if self._closed.is_set():
            raise DeliveryError("link closed")
        try:
            mdu = getattr(self.link, "MDU", None)
            if mdu is None or len(data) <= mdu:
                RNS.Packet(self.link, data).send()
            else:
                RNS.Resource(data, self.link, advertise=True, auto_compress=False)
        except Exception as e:
            raise DeliveryError(f"send failed ({len(data)} bytes): {e}") from e

    def credential(self) -> str | None:
        if self.handle_mode:
            return parse_handshake(self.recv())

        timeout = self.identify_timeout_s if self.identify_timeout_s > 0 else None
        self._identified.wait(timeout)
        if self._closed.is_set():
            raise TransportError("link closed before identification")
        if self.peer_hash is None:
            ri = self.link.get_remote_identity()
            if ri is not None:
                self.peer_hash = bytes(ri.hash)
        return self.peer_hash.hex() if self.peer_hash is not None else None

    def close(self) -> None:
        if self._closed.is_set():
            return
        try:
            self.link.teardown()
        except Exception:
            self.log.debug("Teardown failed link_id=%s", self.describe(), exc_info=True)


class HubService:
    """Hosts the chat core on a Reticulum destination."""

    def __init__(self, config: HubRuntimeConfig) -> None:
        validate_config(config)
        self.config = config
        self.log = logging.getLogger("rchatd.hub")

        self._shutdown = threading.Event()
        self._transports_lock = threading.Lock()
        self._transports: dict[str, LinkTransport] = {}

        ledger_path = expand_path(config.ledger_path) if config.ledger_path else ":memory:"
        if ledger_path != ":memory:":
            ensure_private_dir(Path(ledger_path).parent)
        self.ledger = SqliteLedger(ledger_path)
        self.registry = SessionRegistry(
            self.ledger, history_limit=int(config.room_history_limit)
        )
        self.authenticator = self._build_authenticator()
        self.router = MessageRouter(self.registry, self.ledger, self.authenticator, config)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None
        self._announce_thread: threading.Thread | None = None
        self._typing_thread: threading.Thread | None = None

    def _build_authenticator(self) -> Authenticator:
        if self.config.identity_mode == MODE_HANDLE:
            return HandleAuthenticator(
                self.registry, max_chars=int(self.config.handle_max_chars)
            )
        trust = TrustList(self.config.trusted_identities, self.config.banned_identities)
        return IdentityAuthenticator(trust, trusted_only=bool(self.config.trusted_only))

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        if self.config.announce_period_s and self.config.announce_period_s > 0:
            self._announce_thread = threading.Thread(
                target=self._announce_loop, name="rchatd-announce", daemon=True
            )
            self._announce_thread.start()

        if self.config.typing_timeout_s and self.config.typing_timeout_s > 0:
            self._typing_thread = threading.Thread(
                target=self._typing_loop, name="rchatd-typing", daemon=True
            )
            self._typing_thread.start()

        self.log.info(
            "Hub running version=%s dest_name=%s dest_hash=%s",
            __version__,
            self.config.dest_name,
            self.destination.hash.hex(),
        )
        self.log.info(
            "Policy identity_mode=%s default_room=%r history_limit=%s "
            "outbound_queue_size=%s rate_limit_msgs_per_minute=%s leave_notice=%s",
            self.config.identity_mode,
            self.config.default_room,
            self.config.room_history_limit,
            self.config.outbound_queue_size,
            self.config.rate_limit_msgs_per_minute,
            self.config.leave_notice,
        )

    def announce_data(self) -> bytes:
        return cbor2.dumps(
            {"proto": "rchat", "v": RCHAT_VERSION, "hub": self.config.hub_name}
        )

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(app_data=self.announce_data())
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        period = float(self.config.announce_period_s)
        while not self._shutdown.wait(period):
            self._announce_once()

    def _typing_loop(self) -> None:
        timeout = float(self.config.typing_timeout_s)
        interval = min(1.0, timeout)
        while not self._shutdown.wait(interval):
            expired = self.registry.expire_typing(timeout)
            if expired and self.log.isEnabledFor(logging.DEBUG):
                self.log.debug("Reset %d stale typing flag(s)", expired)

    def _on_link(self, link: RNS.Link) -> None:
        if self._shutdown.is_set():
            link.teardown()
            return

        transport = LinkTransport(
            link,
            handle_mode=self.config.identity_mode == MODE_HANDLE,
            identify_timeout_s=float(self.config.identify_timeout_s),
            max_resource_bytes=int(self.config.max_resource_bytes),
        )
        transport.attach()
        link_id = transport.describe()
        with self._transports_lock:
            self._transports[link_id] = transport

        thread = threading.Thread(
            target=self._serve_link,
            args=(link_id, transport),
            name=f"rchatd-link-{link_id[:8]}",
            daemon=True,
        )
        thread.start()
        self.log.info("Link established link_id=%s", link_id)

    def _serve_link(self, link_id: str, transport: LinkTransport) -> None:
        try:
            self.router.serve(transport)
        finally:
            with self._transports_lock:
                self._transports.pop(link_id, None)
            self.log.info("Link closed link_id=%s", link_id)

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        if self._shutdown.is_set():
            return
        self._shutdown.set()

        with self._transports_lock:
            transports = list(self._transports.values())
        for transport in transports:
            transport.close()

        for session in self.registry.clear_all():
            session.stop_writer(timeout=0.5)

        self.ledger.close()

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not os.path.exists(p):
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(p)
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident
