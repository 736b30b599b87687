"""Connection authentication for the hub.

Two deployment modes exist and a hub runs exactly one of them:

- ``verified``: the credential is the Reticulum identity hash the client
  proved during link identification. Several sessions may share an identity.
- ``handle``: the credential is a self-declared handle, reserved in the
  registry for the lifetime of the session so at most one session holds it.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, Protocol

from .constants import SYSTEM_SENDER
from .errors import AuthError
from .util import normalize_handle

if TYPE_CHECKING:
    from .registry import SessionRegistry


class Authenticator(Protocol):
    def authenticate(self, token: str | None) -> str: ...

    def release(self, identity: str) -> None: ...


def parse_identity_hash(text: str) -> bytes:
    s = str(text).strip().lower()
    if s.startswith("0x"):
        s = s[2:]
    s = "".join(ch for ch in s if not ch.isspace())
    try:
        h = bytes.fromhex(s)
    except ValueError as e:
        raise ValueError(f"invalid identity hash {text!r}") from e
    if not h:
        raise ValueError("identity hash must not be empty")
    return h


class TrustList:
    """Trusted and banned Reticulum identity hashes."""

    def __init__(
        self, trusted: Iterable[str] = (), banned: Iterable[str] = ()
    ) -> None:
        self._trusted = {parse_identity_hash(h) for h in trusted if str(h).strip()}
        self._banned = {parse_identity_hash(h) for h in banned if str(h).strip()}

    def is_trusted(self, peer_hash: bytes | None) -> bool:
        return bool(peer_hash) and peer_hash in self._trusted

    def is_banned(self, peer_hash: bytes | None) -> bool:
        return bool(peer_hash) and peer_hash in self._banned


class IdentityAuthenticator:
    """Accepts identified links whose identity is not banned."""

    def __init__(self, trust: TrustList, *, trusted_only: bool = False) -> None:
        self.trust = trust
        self.trusted_only = trusted_only
        self.log = logging.getLogger("rchatd.auth")

    def authenticate(self, token: str | None) -> str:
        if not token:
            raise AuthError("Missing identity. Identify the link before chatting.")
        try:
            peer_hash = parse_identity_hash(token)
        except ValueError as e:
            raise AuthError("Invalid identity.") from e

        if self.trust.is_banned(peer_hash):
            self.log.warning("Rejected banned identity %s", peer_hash.hex())
            raise AuthError("Banned.")
        if self.trusted_only and not self.trust.is_trusted(peer_hash):
            self.log.info("Rejected untrusted identity %s", peer_hash.hex())
            raise AuthError("Identity is not trusted on this hub.")
        return peer_hash.hex()

    def release(self, identity: str) -> None:
        return None


class HandleAuthenticator:
    """Reserves self-declared handles so that each is held by one session."""

    def __init__(self, registry: SessionRegistry, *, max_chars: int = 32) -> None:
        self.registry = registry
        self.max_chars = max_chars

    def authenticate(self, token: str | None) -> str:
        handle = normalize_handle(token, max_chars=self.max_chars)
        if handle is None:
            raise AuthError("Invalid handle.")
        if handle.lower() == SYSTEM_SENDER:
            raise AuthError(f"Handle {handle} is reserved.")
        self.registry.reserve_identity(handle)
        return handle

    def release(self, identity: str) -> None:
        self.registry.release_identity(identity)
