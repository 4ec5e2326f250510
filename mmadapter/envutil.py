"""Typed access to configuration held in environment variables."""

from __future__ import annotations

import os
import re

_INT_RE = re.compile(r"[+-]?\d+")
_TRUE_VALUES = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_VALUES = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def _lookup(name: str) -> str | None:
    value = os.environ.get(name)
    return value if value else None


def get_env_int(name: str, default: int) -> int:
    """Return the integer value of ``name``, or ``default`` when it is unset."""
    raw = _lookup(name)
    if raw is None:
        return default
    if not _INT_RE.fullmatch(raw):
        raise ValueError(f"environment variable {name} must be an integer, found {raw!r}")
    return int(raw)


def get_env_float(name: str, default: float) -> float:
    """Return the float value of ``name``, or ``default`` when it is unset."""
    raw = _lookup(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"environment variable {name} must be a number, found {raw!r}") from None


def get_env_bool(name: str, default: bool) -> bool:
    """Return the boolean value of ``name``, or ``default`` when it is unset."""
    raw = _lookup(name)
    if raw is None:
        return default
    if raw in _TRUE_VALUES:
        return True
    if raw in _FALSE_VALUES:
        return False
    raise ValueError(f"environment variable {name} must be a boolean, found {raw!r}")


def get_env_string(name: str, default: str) -> str:
    """Return the value of ``name``, or ``default`` when it is unset or empty."""
    raw = _lookup(name)
    return default if raw is None else raw