"""Log record models.

Records are designed to be:
- Append-only; the store assigns `id` and never mutates a row.
- Stored with naive UTC timestamps and handed back as timezone-aware UTC.
- Open-ended: fields beyond the fixed columns live in a JSON `meta` column.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Final, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Fixed schema columns, in table order.
COLUMNS: Final[tuple[str, ...]] = ("id", "level", "message", "timestamp", "meta")

SortColumn = Literal["id", "timestamp"]
SortOrder = Literal["asc", "desc"]


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(tz=timezone.utc)


def to_utc_naive(value: datetime) -> datetime:
    """Normalize a datetime to naive UTC (naive inputs are taken as UTC)."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_utc_aware(value: datetime) -> datetime:
    """Normalize a datetime to timezone-aware UTC (naive inputs are taken as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def encode_meta(meta: Mapping[str, Any] | None) -> str:
    """Serialize extra fields as stable JSON."""
    return json.dumps(dict(meta or {}), separators=(",", ":"), sort_keys=True, default=str)


def decode_meta(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    data = json.loads(raw)
    return data if isinstance(data, dict) else {"value": data}


class LogRecord(BaseModel):
    """One persisted log entry.

    Columns left out of a query projection come back as `None` (`meta` as `{}`).
    """

    model_config = ConfigDict(extra="ignore", frozen=True)

    id: int | None = None
    level: str | None = None
    message: str | None = None
    timestamp: datetime | None = None

    # Caller-supplied fields beyond the fixed columns.
    meta: dict[str, Any] = Field(default_factory=dict)

    @field_validator("timestamp")
    @classmethod
    def _aware_timestamp(cls, v: datetime | None) -> datetime | None:
        return None if v is None else to_utc_aware(v)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "LogRecord":
        """Build a record from a store row keyed by column name."""
        data = dict(row)
        if "meta" in data:
            raw = data["meta"]
            data["meta"] = raw if isinstance(raw, dict) else decode_meta(raw)
        return cls(**data)


class RangeFilter(BaseModel):
    """Predicate for a single bounded read against the store."""

    model_config = ConfigDict(frozen=True)

    # Inclusive id lower bound.
    min_id: int | None = None

    # `from_ts` is inclusive; `until_ts` is inclusive unless `until_inclusive` is False.
    from_ts: datetime | None = None
    until_ts: datetime | None = None
    until_inclusive: bool = True

    limit: int | None = Field(default=None, gt=0)
    order_by: SortColumn = "id"
    order: SortOrder | None = None

    # Projection; None means all columns.
    fields: tuple[str, ...] | None = None

    @field_validator("from_ts", "until_ts")
    @classmethod
    def _naive_utc(cls, v: datetime | None) -> datetime | None:
        return None if v is None else to_utc_naive(v)

    @field_validator("fields")
    @classmethod
    def _known_fields(cls, v: tuple[str, ...] | None) -> tuple[str, ...] | None:
        if v is None or len(v) == 0:
            return None
        unknown = [f for f in v if f not in COLUMNS]
        if unknown:
            raise ValueError(f"Unknown fields {unknown!r}; expected a subset of {list(COLUMNS)!r}")
        return tuple(dict.fromkeys(v))

    def columns(self) -> tuple[str, ...]:
        """Columns to select, in schema order when no projection is set."""
        return self.fields if self.fields is not None else COLUMNS
