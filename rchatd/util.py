from __future__ import annotations

import os


def expand_path(p: str) -> str:
    return os.path.expanduser(os.path.expandvars(p))


def _has_control_chars(s: str) -> bool:
    return "\n" in s or "\r" in s or "\x00" in s


def normalize_handle(value, *, max_chars: int = 32) -> str | None:
    if not isinstance(value, str):
        return None

    s = value.strip()
    if not s:
        return None

    if max_chars > 0 and len(s) > int(max_chars):
        return None

    # Keep this conservative: avoid embedded newlines or NUL, which frequently
    # cause UI/log formatting issues.
    if _has_control_chars(s) or any(ch.isspace() for ch in s):
        return None

    try:
        s.encode("utf-8", "strict")
    except UnicodeError:
        return None

    return s


def normalize_room(value: str, *, max_len: int = 64) -> str:
    r = value.strip()
    if not r:
        raise ValueError("room name must not be empty")
    if max_len > 0 and len(r) > int(max_len):
        raise ValueError("room name too long")
    if _has_control_chars(r):
        raise ValueError("room name contains control characters")
    return r
