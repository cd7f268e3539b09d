"""Bounded historical queries.

A query turns a handful of optional options into exactly one `select_range`
call. There is no pagination cursor; callers page by narrowing the time range
and limiting `rows`.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import QueryError
from .models import LogRecord, RangeFilter, SortOrder
from .stores import LogStore

QueryCallback = Callable[[QueryError | None, list[LogRecord] | None], Any]


class QueryOptions(BaseModel):
    """Options for a historical query (all optional).

    `from`/`until` only restrict the range when both are present.
    """

    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)

    from_: datetime | None = Field(default=None, alias="from")
    until: datetime | None = None
    rows: int | None = Field(default=None, gt=0)
    order: SortOrder | None = None
    fields: tuple[str, ...] | None = None

    def to_range_filter(self) -> RangeFilter:
        has_range = self.from_ is not None and self.until is not None
        return RangeFilter(
            from_ts=self.from_ if has_range else None,
            until_ts=self.until if has_range else None,
            limit=self.rows,
            order_by="timestamp",
            order=self.order,
            fields=self.fields,
        )


class QueryEngine:
    """Runs historical queries against one table."""

    def __init__(self, *, store: LogStore, table_name: str) -> None:
        self._store = store
        self._table_name = table_name

    async def query(
        self,
        options: QueryOptions | Mapping[str, Any] | None = None,
        callback: QueryCallback | None = None,
    ) -> list[LogRecord] | None:
        """Run a query.

        Without a callback, returns the records or raises `QueryError`. With a
        callback, calls `callback(error, records)` exactly once and returns the
        records (None on failure).
        """
        try:
            records = await self._run(options)
        except QueryError as exc:
            if callback is None:
                raise
            callback(exc, None)
            return None

        if callback is not None:
            callback(None, records)
        return records

    async def _run(self, options: QueryOptions | Mapping[str, Any] | None) -> list[LogRecord]:
        try:
            if options is None:
                opts = QueryOptions()
            elif isinstance(options, QueryOptions):
                opts = options
            else:
                opts = QueryOptions.model_validate(dict(options))
            range_filter = opts.to_range_filter()
        except ValidationError as exc:
            raise QueryError(f"Invalid query options: {exc}") from exc

        try:
            return await asyncio.to_thread(self._store.select_range, self._table_name, range_filter)
        except Exception as exc:  # noqa: BLE001 - surfaced to the caller as QueryError
            raise QueryError(f"Query against {self._table_name!r} failed: {exc}") from exc
