from __future__ import annotations

import argparse
import os
import sys
from dataclasses import replace
from pathlib import Path

import RNS

from . import __version__
from .config import (
    CONFIG_FILE,
    IDENTITY_FILE,
    LEDGER_FILE,
    HubRuntimeConfig,
    apply_config_data,
    default_path,
    ensure_private_dir,
    load_toml,
)
from .logging_config import configure_logging
from .service import HubService


def _write_default_config(config_path: str, identity_path: str, ledger_path: str) -> None:
    cfg_dir = os.path.dirname(config_path)
    if cfg_dir:
        ensure_private_dir(Path(cfg_dir))

    content = f"""# rchatd configuration (TOML)
#
# This file was created on first run.
# Edit it, then start rchatd again.

[hub]

# Optional: Reticulum configuration directory.
# If left unset, Reticulum will choose its default (usually ~/.reticulum).
configdir = ""

# Where rchatd stores its persistent identity (Reticulum Identity file).
identity_path = {identity_path!r}

# SQLite database holding rooms and message history.
ledger_path = {ledger_path!r}

# Destination name to host the hub on.
dest_name = "rchat.hub"

# Announcing (Reticulum destination announces)
#
# announce_on_start: send a single announce right after startup.
# announce_period_s: if >0, periodically re-announce.
announce_on_start = true
announce_period_s = 0.0

# Hub identity fields.
hub_name = "rchat"

# Sent to every client as a system message right after it is accepted.
greeting = ""

# Identity mode.
#
# "verified": clients identify their link with their Reticulum identity; the
#             identity hash is their name. Several links may share one identity.
# "handle":   clients send {{"token": "<handle>"}} as their first frame. Each
#             handle can be held by one connection at a time.
identity_mode = "verified"

# identify_timeout_s: how long a verified-mode link may stay unidentified.
identify_timeout_s = 30.0

# trusted_only: in verified mode, only admit trusted_identities.
# banned_identities are always refused.
trusted_only = false
trusted_identities = []
banned_identities = []

# Rooms.
#
# default_room: room every client joins on connect ("" disables).
# replay_history: send a room's recent history to a joining client.
# room_history_limit: messages kept in memory per room (0 = unbounded).
default_room = "general"
replay_history = true
room_history_limit = 500
max_room_name_len = 64
handle_max_chars = 32

# Departure notice when a client disconnects: "room", "all" or "none".
leave_notice = "room"

# Typing indicators are reset after this many idle seconds (0 disables).
typing_timeout_s = 5.0

# Delivery.
#
# outbound_queue_size: per-client send queue. When full, the oldest queued
# frame is dropped. 0 writes synchronously.
outbound_queue_size = 64
rate_limit_msgs_per_minute = 240
max_resource_bytes = 262144

[logging]

# Log level for rchatd itself.
level = "INFO"

# Log level for Reticulum/RNS Python logging (if used by your install).
rns_level = "WARNING"

# Log to stderr (systemd/journald friendly).
console = true

# Optional file path for logs (leave empty to disable).
file = ""

# Log format and optional date format.
format = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
datefmt = ""
"""

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(content)


def _ensure_first_run_files(config_path: str, identity_path: str, ledger_path: str) -> bool:
    created_any = False

    if not os.path.exists(config_path):
        _write_default_config(config_path, identity_path, ledger_path)
        created_any = True

    if not os.path.exists(identity_path):
        storage_dir = os.path.dirname(identity_path)
        if storage_dir:
            ensure_private_dir(Path(storage_dir))
        ident = RNS.Identity()
        ident.to_file(identity_path)
        try:
            os.chmod(identity_path, 0o600)
        except OSError:
            pass
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="rchatd", description="Run an rchat hub daemon")

    p.add_argument("--version", action="version", version=f"rchatd {__version__}")
    p.add_argument(
        "--config",
        default=str(default_path(CONFIG_FILE)),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_path(IDENTITY_FILE)),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--ledger",
        default=str(default_path(LEDGER_FILE)),
        help="Path to the SQLite room/message ledger",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: rchat.hub)"
    )
    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in announces")
    p.add_argument(
        "--identity-mode",
        choices=("verified", "handle"),
        default=None,
        help="Verified Reticulum identities or self-declared handles",
    )
    p.add_argument(
        "--default-room",
        default=None,
        help="Room joined on connect (empty disables)",
    )
    p.add_argument(
        "--outbound-queue-size",
        type=int,
        default=None,
        help="Per-client send queue length (0 writes synchronously)",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-client message rate limit (0 disables)",
    )
    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def build_config(args: argparse.Namespace) -> HubRuntimeConfig:
    cfg = HubRuntimeConfig(
        config_path=str(args.config),
        configdir=args.configdir,
        identity_path=str(args.identity),
        ledger_path=str(args.ledger),
    )

    if args.config and os.path.exists(args.config):
        cfg = apply_config_data(cfg, load_toml(str(args.config)))

    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)
    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)
    if args.identity_mode is not None:
        cfg = replace(cfg, identity_mode=args.identity_mode)
    if args.default_room is not None:
        cfg = replace(cfg, default_room=args.default_room or None)
    if args.outbound_queue_size is not None:
        cfg = replace(cfg, outbound_queue_size=int(args.outbound_queue_size))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )
    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) or None)

    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_path = str(args.config)
    identity_path = str(args.identity)
    ledger_path = str(args.ledger)

    if _ensure_first_run_files(config_path, identity_path, ledger_path):
        print(
            "Created default rchatd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run rchatd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = build_config(args)
    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
