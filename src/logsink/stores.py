"""Relational store adapters (storage backends).

Every adapter exposes the same small contract: ensure a table exists, insert
a row, read the max id, read a bounded range, and delete rows older than a
cutoff. Table names are always parameters so one connection can serve
several sinks.
"""

from __future__ import annotations

import re
import threading
from collections.abc import Mapping, Sequence
from contextlib import AbstractContextManager, nullcontext
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

import duckdb
from sqlalchemy import Column, DateTime, Integer, MetaData, String, Table, Text, create_engine, delete, func, select
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.pool import StaticPool

from .models import LogRecord, RangeFilter, encode_meta, to_utc_naive, utc_now

if TYPE_CHECKING:
    from config import LogSinkConfig

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def check_identifier(name: str) -> str:
    """Return `name` if it is a plain SQL identifier, else raise ValueError."""
    if not isinstance(name, str) or not _IDENTIFIER.match(name):
        raise ValueError(f"Invalid table name: {name!r} (letters, digits and underscores only)")
    return name


def _prepare_row(row: Mapping[str, Any]) -> dict[str, Any]:
    """Normalize an incoming row to the fixed columns.

    The adapter assigns the timestamp when the caller did not.
    """
    ts = row.get("timestamp")
    meta = row.get("meta")
    return {
        "level": row.get("level"),
        "message": None if row.get("message") is None else str(row.get("message")),
        "timestamp": to_utc_naive(ts) if isinstance(ts, datetime) else to_utc_naive(utc_now()),
        "meta": meta if isinstance(meta, str) else encode_meta(meta),
    }


class LogStore(Protocol):
    """A synchronous relational store for log records.

    Stores are intentionally synchronous; the async layers isolate blocking I/O
    with `asyncio.to_thread`. Implementations must be safe to call from several
    threads at once.
    """

    def ensure_schema(self, table_name: str) -> None:
        """Create the table if it does not exist yet (idempotent)."""

    def insert(self, table_name: str, row: Mapping[str, Any]) -> int | None:
        """Append a row; return the assigned id if the backend reports it."""

    def select_max_id(self, table_name: str) -> int | None:
        """Return the highest id, or None for an empty table."""

    def select_range(self, table_name: str, range_filter: RangeFilter) -> list[LogRecord]:
        """Return the rows matching the filter."""

    def delete_older_than(self, table_name: str, cutoff: datetime) -> int:
        """Delete rows with a timestamp strictly before `cutoff`; return the count."""

    def close(self) -> None:
        """Close any underlying resources."""


class InMemoryLogStore:
    """In-memory store for tests and local debugging.

    `insert` does not report ids, so callers fall back to `select_max_id`.
    """

    def __init__(self) -> None:
        """Create an empty in-memory store."""
        self._lock = threading.Lock()
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._next_ids: dict[str, int] = {}

    def ensure_schema(self, table_name: str) -> None:
        with self._lock:
            self._tables.setdefault(check_identifier(table_name), [])
            self._next_ids.setdefault(table_name, 1)

    def insert(self, table_name: str, row: Mapping[str, Any]) -> None:
        prepared = _prepare_row(row)
        with self._lock:
            rows = self._rows(table_name)
            prepared["id"] = self._next_ids[table_name]
            self._next_ids[table_name] += 1
            rows.append(prepared)
        return None

    def select_max_id(self, table_name: str) -> int | None:
        with self._lock:
            rows = self._rows(table_name)
            return rows[-1]["id"] if rows else None

    def select_range(self, table_name: str, range_filter: RangeFilter) -> list[LogRecord]:
        f = range_filter
        with self._lock:
            rows = list(self._rows(table_name))

        if f.min_id is not None:
            rows = [r for r in rows if r["id"] >= f.min_id]
        if f.from_ts is not None:
            rows = [r for r in rows if r["timestamp"] >= f.from_ts]
        if f.until_ts is not None:
            if f.until_inclusive:
                rows = [r for r in rows if r["timestamp"] <= f.until_ts]
            else:
                rows = [r for r in rows if r["timestamp"] < f.until_ts]
        if f.order is not None:
            rows.sort(key=lambda r: (r[f.order_by], r["id"]), reverse=f.order == "desc")
        if f.limit is not None:
            rows = rows[: f.limit]

        columns = f.columns()
        return [LogRecord.from_row({c: r[c] for c in columns}) for r in rows]

    def delete_older_than(self, table_name: str, cutoff: datetime) -> int:
        cutoff = to_utc_naive(cutoff)
        with self._lock:
            rows = self._rows(table_name)
            kept = [r for r in rows if r["timestamp"] >= cutoff]
            deleted = len(rows) - len(kept)
            rows[:] = kept
        return deleted

    def close(self) -> None:  # noqa: D401 - keep interface consistent
        """No-op."""

    def _rows(self, table_name: str) -> list[dict[str, Any]]:
        try:
            return self._tables[table_name]
        except KeyError:
            raise LookupError(f"Table {table_name!r} does not exist") from None


def _quote(column: str) -> str:
    return f'"{column}"'


class DuckDBLogStore:
    """DuckDB store for durable local persistence.

    Ids come from a per-table sequence and are reported via `returning`.
    """

    def __init__(self, *, path: str | Path = ":memory:") -> None:
        """Create (or open) a DuckDB database at the given path."""
        self._lock = threading.Lock()
        self._conn = duckdb.connect(str(path))
        self._closed = False

    def ensure_schema(self, table_name: str) -> None:
        """Create the sequence and table if they do not exist yet."""
        table = check_identifier(table_name)
        sequence = f"{table}_id_seq"
        create_sql = f"""
        create table if not exists {table} (
          "id" bigint primary key default nextval('{sequence}'),
          "level" varchar,
          "message" varchar,
          "timestamp" timestamp default current_timestamp,
          "meta" varchar
        )
        """
        with self._lock:
            self._conn.execute(f"create sequence if not exists {sequence} start 1")
            self._conn.execute(create_sql)

    def insert(self, table_name: str, row: Mapping[str, Any]) -> int:
        """Insert a single row and return its id."""
        prepared = _prepare_row(row)
        insert_sql = f"""
        insert into {check_identifier(table_name)} ("level", "message", "timestamp", "meta")
        values (?, ?, ?, ?)
        returning "id"
        """
        with self._lock:
            result = self._conn.execute(
                insert_sql,
                [prepared["level"], prepared["message"], prepared["timestamp"], prepared["meta"]],
            ).fetchone()
        return int(result[0])

    def select_max_id(self, table_name: str) -> int | None:
        with self._lock:
            result = self._conn.execute(f'select max("id") from {check_identifier(table_name)}').fetchone()
        if result is None or result[0] is None:
            return None
        return int(result[0])

    def select_range(self, table_name: str, range_filter: RangeFilter) -> list[LogRecord]:
        f = range_filter
        columns = f.columns()
        sql = f"select {', '.join(_quote(c) for c in columns)} from {check_identifier(table_name)}"

        where: list[str] = []
        params: list[Any] = []
        if f.min_id is not None:
            where.append('"id" >= ?')
            params.append(f.min_id)
        if f.from_ts is not None:
            where.append('"timestamp" >= ?')
            params.append(f.from_ts)
        if f.until_ts is not None:
            where.append('"timestamp" <= ?' if f.until_inclusive else '"timestamp" < ?')
            params.append(f.until_ts)
        if where:
            sql += " where " + " and ".join(where)
        if f.order is not None:
            sql += f" order by {_quote(f.order_by)} {f.order}"
            if f.order_by != "id":
                sql += f', "id" {f.order}'
        if f.limit is not None:
            sql += f" limit {int(f.limit)}"

        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [LogRecord.from_row(dict(zip(columns, row))) for row in rows]

    def delete_older_than(self, table_name: str, cutoff: datetime) -> int:
        with self._lock:
            deleted = self._conn.execute(
                f'delete from {check_identifier(table_name)} where "timestamp" < ? returning "id"',
                [to_utc_naive(cutoff)],
            ).fetchall()
        return len(deleted)

    def close(self) -> None:
        """Close the underlying DuckDB connection (idempotent)."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._conn.close()


def _engine_kwargs(url: str) -> dict[str, Any]:
    """Engine options; in-memory SQLite must share one connection across threads."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database in (None, "", ":memory:"):
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True}


class SQLAlchemyLogStore:
    """Store for any database SQLAlchemy can reach (SQLite, PostgreSQL, MySQL, ...)."""

    def __init__(self, *, url: str | None = None, engine: Engine | None = None) -> None:
        """Create a store from a database URL or an existing engine."""
        if engine is None:
            if not url:
                raise ValueError("SQLAlchemyLogStore requires either url or engine")
            engine = create_engine(url, **_engine_kwargs(url))
        self._engine = engine
        self._metadata = MetaData()
        self._tables: dict[str, Table] = {}
        # Guards the Table cache only; the pool handles concurrent I/O.
        self._lock = threading.Lock()
        # A StaticPool hands the same connection to every thread, so I/O on it is serialized.
        self._io_lock: AbstractContextManager[Any] = (
            threading.Lock() if isinstance(engine.pool, StaticPool) else nullcontext()
        )

    def _table(self, table_name: str) -> Table:
        with self._lock:
            table = self._tables.get(table_name)
            if table is None:
                table = Table(
                    check_identifier(table_name),
                    self._metadata,
                    Column("id", Integer, primary_key=True, autoincrement=True),
                    Column("level", String(16)),
                    Column("message", Text),
                    Column("timestamp", DateTime, server_default=func.now()),
                    Column("meta", Text),
                )
                self._tables[table_name] = table
            return table

    def ensure_schema(self, table_name: str) -> None:
        table = self._table(table_name)
        with self._io_lock:
            self._metadata.create_all(self._engine, tables=[table], checkfirst=True)

    def insert(self, table_name: str, row: Mapping[str, Any]) -> int | None:
        table = self._table(table_name)
        with self._io_lock, self._engine.begin() as conn:
            result = conn.execute(table.insert().values(**_prepare_row(row)))
            pk = result.inserted_primary_key
        if not pk or pk[0] is None:
            return None
        return int(pk[0])

    def select_max_id(self, table_name: str) -> int | None:
        table = self._table(table_name)
        with self._io_lock, self._engine.connect() as conn:
            value = conn.execute(select(func.max(table.c.id))).scalar()
        return None if value is None else int(value)

    def select_range(self, table_name: str, range_filter: RangeFilter) -> list[LogRecord]:
        f = range_filter
        table = self._table(table_name)
        stmt = select(*[table.c[name] for name in f.columns()])

        if f.min_id is not None:
            stmt = stmt.where(table.c.id >= f.min_id)
        if f.from_ts is not None:
            stmt = stmt.where(table.c.timestamp >= f.from_ts)
        if f.until_ts is not None:
            stmt = stmt.where(table.c.timestamp <= f.until_ts if f.until_inclusive else table.c.timestamp < f.until_ts)
        if f.order is not None:
            keys: Sequence[Any] = [table.c[f.order_by]] if f.order_by == "id" else [table.c[f.order_by], table.c.id]
            stmt = stmt.order_by(*[k.asc() if f.order == "asc" else k.desc() for k in keys])
        if f.limit is not None:
            stmt = stmt.limit(f.limit)

        with self._io_lock, self._engine.connect() as conn:
            rows = conn.execute(stmt).mappings().all()
        return [LogRecord.from_row(row) for row in rows]

    def delete_older_than(self, table_name: str, cutoff: datetime) -> int:
        table = self._table(table_name)
        with self._io_lock, self._engine.begin() as conn:
            result = conn.execute(delete(table).where(table.c.timestamp < to_utc_naive(cutoff)))
        return max(result.rowcount or 0, 0)

    def close(self) -> None:
        """Dispose of the engine's connection pool."""
        self._engine.dispose()


def create_store(config: LogSinkConfig) -> LogStore:
    """Build the store backend named by `config.client`."""
    if config.client == "duckdb":
        return DuckDBLogStore(path=config.connection)
    if config.client == "sqlalchemy":
        return SQLAlchemyLogStore(url=config.connection)
    raise ValueError(f"Unsupported client: {config.client!r}")
