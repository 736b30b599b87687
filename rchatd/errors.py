"""Error taxonomy for the chat core.

None of these ever terminate the hub; each is confined to one session or one
operation.
"""

from __future__ import annotations


class ChatError(Exception):
    """Base class for all rchatd errors."""


class ProtocolError(ChatError):
    """Malformed or semantically invalid frame. Reported back to the sender."""


class AuthError(ChatError):
    """Bad or missing credential. Fatal to the connection attempt."""


class DirectoryError(ChatError):
    """Ledger unreachable or constraint violation during room lookup/creation."""


class PersistenceError(ChatError):
    """Message append failed after the message was already broadcast."""


class DeliveryError(ChatError):
    """A single recipient's transport write failed during fan-out."""


class TransportError(ChatError):
    """A session's own read failed, or the transport was closed."""
