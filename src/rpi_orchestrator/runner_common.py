"""Shared helpers for spawning phase sessions."""

from __future__ import annotations

import math
import os
import shutil
from collections.abc import Mapping
from typing import Any

# Set by an agent session in its own environment; stripped so that
# sequential phase sessions are not mistaken for nested ones.
NESTING_GUARD_ENV = "CLAUDECODE"


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    resolved = shutil.which(expanded)
    if resolved:
        return resolved
    return expanded


def session_env(base: Mapping[str, str] | None = None) -> dict[str, str]:
    """Copy of *base* (default ``os.environ``) without the nesting guard."""
    env = dict(os.environ if base is None else base)
    env.pop(NESTING_GUARD_ENV, None)
    return env


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed CLI payloads."""
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            return 0
        return int(value)
    if isinstance(value, str):
        cleaned = value.strip().replace(",", "")
        if not cleaned:
            return 0
        try:
            return int(cleaned)
        except ValueError:
            try:
                return int(float(cleaned))
            except (TypeError, ValueError, OverflowError):
                return 0
    try:
        return int(value)
    except (TypeError, ValueError, OverflowError):
        return 0


def coerce_float(value: Any) -> float:
    """Best-effort float coercion; non-finite or invalid values become 0.0."""
    if isinstance(value, bool) or value is None:
        return 0.0
    try:
        result = float(value)
    except (TypeError, ValueError, OverflowError):
        return 0.0
    return result if math.isfinite(result) else 0.0
