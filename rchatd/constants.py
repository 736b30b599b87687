# rchat wire protocol constants (message kinds, command discriminators, texts)

RCHAT_VERSION = 1

# Message kinds (the "type" field of a frame)
T_REGULAR = "regular"
T_DIRECT = "direct"
T_INVALID = "invalid"
T_COMMAND = "command"
T_SYSTEM = "system"
T_TYPING = "typing"

# Frame keys
K_TYPE = "type"
K_CONTENT = "content"
K_SENDER = "sender"
K_ID = "id"
K_ROOM = "room"
K_TARGET = "target"
K_TS = "timestamp"
K_COMMAND = "command"

# Handshake key (first frame of a handle-mode link)
K_TOKEN = "token"

# Room object keys
R_ID = "id"
R_NAME = "name"

# Command discriminators (the "command" field). Zero means "none".
C_INVALID = 0
C_HELP = 1
C_USERS = 2
C_JOIN = 3

COMMAND_NAMES = {
    "help": C_HELP,
    "users": C_USERS,
    "join": C_JOIN,
}

SYSTEM_SENDER = "system"

# Diagnostics returned as Invalid content by the codec.
E_BAD_FORMAT = "Invalid message format. Ensure your message is valid JSON."
E_BAD_DM = "Invalid DM format."
E_BAD_JOIN = (
    'Invalid room format. Use: {"type": "command", "content": "join", '
    '"room": {"name": "roomName"}}'
)
E_UNKNOWN_COMMAND = "Unknown command."
E_EMPTY_CHAT = "Chat message cannot be empty."
E_UNKNOWN_TYPE = "Unknown message type."

# System texts sent by the router/registry.
HELP_TEXT = (
    "Available commands: /dm <username> <message> - Send a direct message\n"
    " /users - List of connected users\n"
    " /join <roomName> - Join (or create) a room"
)
MSG_JOIN_FIRST = "You must join a room first. Use /join <roomName>"
MSG_RATE_LIMITED = "Rate limited."
TYPING_ON = "is typing..."
TYPING_OFF = "stopped typing"

# Identity modes
MODE_VERIFIED = "verified"
MODE_HANDLE = "handle"

# Departure notice scopes
LEAVE_ROOM = "room"
LEAVE_ALL = "all"
LEAVE_NONE = "none"
