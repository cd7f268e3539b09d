"""Severity table shared by the write path and the minimum-level filter.

Lower rank means higher urgency. Persisted records always carry the name.
"""

from __future__ import annotations

from collections.abc import Mapping
from types import MappingProxyType
from typing import Final

from .errors import InvalidLevel

LEVELS: Final[Mapping[str, int]] = MappingProxyType(
    {
        "emerg": 0,
        "alert": 1,
        "crit": 2,
        "error": 3,
        "warning": 4,
        "notice": 5,
        "info": 6,
        "debug": 7,
    }
)

_NAMES_BY_RANK: Final[Mapping[int, str]] = MappingProxyType({rank: name for name, rank in LEVELS.items()})


def level_name(rank: int) -> str:
    """Return the severity name for a numeric rank."""
    # bool is an int subclass; True/False are not ranks.
    if isinstance(rank, bool) or not isinstance(rank, int):
        raise InvalidLevel(rank)
    try:
        return _NAMES_BY_RANK[rank]
    except KeyError:
        raise InvalidLevel(rank) from None


def level_rank(name: str) -> int:
    """Return the numeric rank for a severity name (case-insensitive)."""
    if not isinstance(name, str):
        raise InvalidLevel(name)
    try:
        return LEVELS[name.strip().lower()]
    except KeyError:
        raise InvalidLevel(name) from None


def resolve_level(level: int | str) -> tuple[str, int]:
    """Resolve a rank or a name into `(name, rank)`."""
    if isinstance(level, str):
        rank = level_rank(level)
        return level_name(rank), rank
    return level_name(level), level
