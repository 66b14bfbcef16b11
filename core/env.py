"""Typed access to environment settings.

Unset or blank variables return the default; set-but-invalid values log a
warning and fall back to the default.
"""

from __future__ import annotations

import os
from typing import Callable, List, Optional, Sequence, TypeVar

from dotenv import load_dotenv

from core.logging import get_logger

T = TypeVar("T", int, float)

_TRUTHY = frozenset({"1", "true", "yes", "y", "on"})
_FALSY = frozenset({"0", "false", "no", "n", "off"})

load_dotenv()

logger = get_logger(__name__)


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    """Stripped value of ``key``; blank counts as unset."""
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_number(key: str, default: T, parse: Callable[[str], T], minimum: Optional[T]) -> T:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    try:
        value = parse(raw.strip())
    except ValueError:
        logger.warning("%s=%r is not a number; using %s.", key, raw, default)
        return default
    if minimum is not None and value < minimum:
        logger.warning("%s=%s is below the minimum %s; using %s.", key, value, minimum, default)
        return default
    return value


def env_int(key: str, default: int, *, minimum: Optional[int] = None) -> int:
    return _env_number(key, default, int, minimum)


def env_float(key: str, default: float, *, minimum: Optional[float] = None) -> float:
    return _env_number(key, default, float, minimum)


def env_bool(key: str, default: bool) -> bool:
    raw = os.getenv(key)
    if raw is None or not raw.strip():
        return default
    normalized = raw.strip().lower()
    if normalized in _TRUTHY:
        return True
    if normalized in _FALSY:
        return False
    logger.warning("%s=%r is not a boolean; using %s.", key, raw, default)
    return default


def env_list(key: str, default: Sequence[str]) -> List[str]:
    """Comma-separated list; blank entries are dropped."""
    raw = os.getenv(key)
    if raw is None:
        return list(default)
    values = [item.strip() for item in raw.split(",") if item.strip()]
    if not values:
        logger.warning("%s is empty; using %s.", key, list(default))
        return list(default)
    return values


__all__ = ["env_bool", "env_float", "env_int", "env_list", "env_str"]
