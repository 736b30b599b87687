from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

_DEFAULT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# Reticulum's Python loggers, tuned separately from the hub's own level.
_LIBRARY_LOGGERS = ("RNS",)


def parse_level(value: Any, default: int) -> int:
    """Accept a level name ("debug", "WARN"), a number, or a numeric string."""
    if isinstance(value, int):
        return value
    text = str(value).strip().upper() if value is not None else ""
    if not text:
        return default
    named = logging.getLevelNamesMapping().get(text)
    if named is not None:
        return named
    return int(text) if text.isdigit() else default


def resolve_log_file(cfg: HubRuntimeConfig, override: str | None = None) -> str | None:
    """The log file to write, or None. An empty override disables file logging."""
    value = cfg.log_file if override is None else override
    if value is None or not str(value).strip():
        return None
    return os.path.expanduser(str(value))


def _open_log_file(path: str) -> logging.Handler:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def build_handlers(cfg: HubRuntimeConfig, log_file: str | None) -> list[logging.Handler]:
    handlers: list[logging.Handler] = []
    if cfg.log_console:
        handlers.append(logging.StreamHandler())
    if log_file:
        handlers.append(_open_log_file(log_file))

    datefmt = cfg.log_datefmt if cfg.log_datefmt and cfg.log_datefmt.strip() else None
    formatter = logging.Formatter(
        fmt=str(cfg.log_format).strip() or _DEFAULT_FORMAT, datefmt=datefmt
    )
    for h in handlers:
        h.setFormatter(formatter)
    return handlers


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Install rchatd's handlers on the root logger.

    Existing root handlers are replaced, so calling this again reconfigures
    rather than duplicating output.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in build_handlers(cfg, resolve_log_file(cfg, override_file)):
        root.addHandler(h)
    root.setLevel(parse_level(override_level or cfg.log_level, logging.INFO))

    library_level = parse_level(cfg.log_rns_level, logging.WARNING)
    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    logging.captureWarnings(True)
