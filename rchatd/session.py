from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Protocol

from .errors import DeliveryError

# Per-session protocol states, driven by the router.
S_CONNECTING = "connecting"
S_AUTHENTICATING = "authenticating"
S_ACTIVE = "active"
S_CLOSED = "closed"

_STOP = object()


class Transport(Protocol):
    """One client connection, exclusively owned by a single Session.

    ``recv`` blocks until a frame arrives and raises ``TransportError`` once
    the connection is gone. ``send`` raises ``DeliveryError`` on failure.
    """

    def recv(self) -> bytes: ...

    def send(self, data: bytes) -> None: ...

    def close(self) -> None: ...

    def credential(self) -> str | None: ...

    def describe(self) -> str: ...


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


class Session:
    """
    Live state of one connected participant.

    The session never holds a Room object; ``room_name`` is resolved through
    the registry, which also owns every mutation of it.

    When ``queue_size`` is positive, outbound frames go through a bounded
    FIFO drained by a dedicated writer thread. A full queue drops its oldest
    frame. With ``queue_size == 0`` frames are written synchronously.
    """

    def __init__(
        self,
        identity: str,
        transport: Transport,
        *,
        session_id: str | None = None,
        queue_size: int = 0,
        rate_limit_per_minute: int = 0,
    ) -> None:
        self.session_id = session_id or uuid.uuid4().hex
        self.identity = identity
        self.transport = transport
        self.room_name: str | None = None
        self.is_typing = False
        self.last_typing_at = 0.0
        self.state = S_CONNECTING
        self.dropped = 0

        self.log = logging.getLogger("rchatd.session")

        self._queue: queue.Queue | None = (
            queue.Queue(maxsize=queue_size) if queue_size > 0 else None
        )
        self._writer: threading.Thread | None = None

        self._rate_per_min = max(0, int(rate_limit_per_minute))
        self._rate = _RateState(
            tokens=float(self._rate_per_min), last_refill=time.monotonic()
        )

    def __repr__(self) -> str:
        return (
            f"Session(id={self.session_id[:8]}, identity={self.identity!r}, "
            f"room={self.room_name!r}, state={self.state})"
        )

    @property
    def queued(self) -> bool:
        return self._queue is not None

    def deliver(self, data: bytes) -> None:
        """
        Hand one frame to the transport.

        Synchronous sessions raise ``DeliveryError`` when the write fails;
        queued sessions never raise here.
        """
        if self._queue is None:
            self.transport.send(data)
            return
        self._put_dropping_oldest(data)

    def _put_dropping_oldest(self, item: object) -> None:
        assert self._queue is not None
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                except queue.Empty:
                    continue
                self.dropped += 1
                self.log.warning(
                    "Outbound queue full, dropped oldest frame identity=%s transport=%s dropped=%s",
                    self.identity,
                    self.transport.describe(),
                    self.dropped,
                )

    def start_writer(self) -> None:
        if self._queue is None or self._writer is not None:
            return
        self._writer = threading.Thread(
            target=self._writer_loop,
            name=f"rchatd-writer-{self.session_id[:8]}",
            daemon=True,
        )
        self._writer.start()

    def stop_writer(self, timeout: float | None = 1.0) -> None:
        writer = self._writer
        if writer is None:
            return
        self._put_dropping_oldest(_STOP)
        if writer is not threading.current_thread():
            writer.join(timeout)
        self._writer = None

    def _writer_loop(self) -> None:
        assert self._queue is not None
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            try:
                self.transport.send(item)  # type: ignore[arg-type]
            except DeliveryError as e:
                self.log.warning(
                    "Delivery failed identity=%s transport=%s err=%s",
                    self.identity,
                    self.transport.describe(),
                    e,
                )

    def refill_and_take(self, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take ``cost``
        tokens. Always succeeds when rate limiting is disabled.
        """
        if self._rate_per_min <= 0:
            return True

        state = self._rate
        now = time.monotonic()
        per_min = float(self._rate_per_min)
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * per_min / 60.0)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True
