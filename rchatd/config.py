from __future__ import annotations

import os
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any

from .constants import LEAVE_ALL, LEAVE_NONE, LEAVE_ROOM, MODE_HANDLE, MODE_VERIFIED


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    ledger_path: str | None = None
    dest_name: str = "rchat.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "rchat"
    greeting: str | None = None
    identity_mode: str = MODE_VERIFIED
    trusted_only: bool = False
    trusted_identities: tuple[str, ...] = ()
    banned_identities: tuple[str, ...] = ()
    identify_timeout_s: float = 30.0
    default_room: str | None = "general"
    replay_history: bool = True
    room_history_limit: int = 500
    max_room_name_len: int = 64
    handle_max_chars: int = 32
    leave_notice: str = LEAVE_ROOM
    typing_timeout_s: float = 5.0
    outbound_queue_size: int = 64
    rate_limit_msgs_per_minute: int = 240
    max_resource_bytes: int = 256 * 1024  # 256 KiB default
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

_EMPTY_MEANS_NONE = ("configdir", "greeting", "default_room", "log_file", "log_datefmt")

CONFIG_FILE = "rchatd.toml"
IDENTITY_FILE = "hub_identity"
LEDGER_FILE = "ledger.sqlite3"


def default_home() -> Path:
    """Directory holding the hub's files: ``$RCHATD_HOME`` or ``~/.rchatd``."""
    return Path(os.environ.get("RCHATD_HOME") or Path.home() / ".rchatd")


def default_path(filename: str) -> Path:
    return default_home() / filename


def ensure_private_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)
    try:
        os.chmod(path, 0o700)
    except OSError:
        # Some filesystems ignore modes.
        pass


def load_toml(path: str) -> dict:
    import tomllib

    with open(path, "rb") as f:
        return tomllib.load(f)


def apply_config_data(cfg: HubRuntimeConfig, data: dict[str, Any]) -> HubRuntimeConfig:
    """Overlay a parsed TOML document onto ``cfg``.

    Keys may sit at top level or in a ``[hub]`` table; the ``[logging]`` table
    maps onto the ``log_*`` fields. Unknown keys are ignored.
    """
    if not isinstance(data, dict):
        return cfg

    hub = data.get("hub")
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging")
    if isinstance(log_table, dict):
        mapped = {_LOGGING_KEYS[k]: v for k, v in log_table.items() if k in _LOGGING_KEYS}
        data = {**data, **mapped}

    allowed = set(asdict(cfg).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")
    updates = {k: v for k, v in data.items() if k in allowed}

    for list_key in ("trusted_identities", "banned_identities"):
        if list_key in updates and isinstance(updates[list_key], list):
            updates[list_key] = tuple(str(x) for x in updates[list_key])

    for key in _EMPTY_MEANS_NONE:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(cfg, **updates) if updates else cfg


def validate_config(cfg: HubRuntimeConfig) -> None:
    if cfg.identity_mode not in (MODE_VERIFIED, MODE_HANDLE):
        raise ValueError(
            f"identity_mode must be {MODE_VERIFIED!r} or {MODE_HANDLE!r}, "
            f"got {cfg.identity_mode!r}"
        )
    if cfg.leave_notice not in (LEAVE_ROOM, LEAVE_ALL, LEAVE_NONE):
        raise ValueError(f"unsupported leave_notice {cfg.leave_notice!r}")
    if cfg.outbound_queue_size < 0:
        raise ValueError("outbound_queue_size must not be negative")
    if cfg.room_history_limit < 0:
        raise ValueError("room_history_limit must not be negative")
