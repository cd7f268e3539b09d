"""Async log sink: the write path plus the query and tail entry points.

The sink isolates blocking store I/O with `asyncio.to_thread`, so it can be
called from the event loop without stalling it.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Mapping
from typing import TYPE_CHECKING, Any

from loguru import logger

from .errors import WriteError
from .levels import LEVELS, resolve_level
from .models import LogRecord
from .query import QueryCallback, QueryEngine, QueryOptions
from .stores import LogStore, check_identifier, create_store
from .sweeper import RetentionPolicy, RetentionSweeper
from .tail import DEFAULT_MAX_QUEUE_SIZE, DEFAULT_POLL_INTERVAL_S, TailStart, TailSubscription, resolve_cursor

if TYPE_CHECKING:
    from config import LogSinkConfig

LoggedListener = Callable[[LogRecord], Any]


class LogSink:
    """Persists log records at or above a minimum severity."""

    def __init__(
        self,
        *,
        store: LogStore,
        table_name: str = "app_logs",
        level: int | str = "warning",
        retention: RetentionPolicy | None = None,
        label: str = "",
        silent: bool = False,
        sweep_probability: float = 0.1,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        error_backoff_s: float = DEFAULT_POLL_INTERVAL_S,
        tail_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
        rng: random.Random | None = None,
    ) -> None:
        """Create a sink over a store.

        Args:
            store: Relational backend; shared by writes, queries, tails and sweeps.
            table_name: Table holding the records.
            level: Minimum severity (name or rank); lower-urgency records are dropped.
            retention: Retention window; None keeps records forever.
            label: Stored in each record's meta when non-empty.
            silent: Drop every record without touching the store.
            sweep_probability: Chance per write that a retention sweep runs.
            poll_interval_s: Default delay between tail polls.
            error_backoff_s: Default delay after a failed tail poll.
            tail_queue_size: Default per-subscription event buffer; polling pauses when full.
            rng: Random source for the sweeper.
        """
        self._store = store
        self._table_name = check_identifier(table_name)
        self._min_name, self._min_rank = resolve_level(level)
        self._label = label
        self.silent = silent
        self._poll_interval_s = poll_interval_s
        self._error_backoff_s = error_backoff_s
        self._tail_queue_size = tail_queue_size

        self._sweeper = RetentionSweeper(
            store=store,
            table_name=self._table_name,
            policy=retention or RetentionPolicy(),
            probability=sweep_probability,
            rng=rng,
        )
        self._queries = QueryEngine(store=store, table_name=self._table_name)

        # Advisory only: may lag the true latest id under concurrent writers.
        self._last_id = 0

        self._listeners: list[LoggedListener] = []
        self._subscriptions: set[TailSubscription] = set()
        self._background: set[asyncio.Task[Any]] = set()
        self._started = False
        self._start_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    def from_config(cls, config: LogSinkConfig, **overrides: Any) -> LogSink:
        """Build a sink (and its store) from configuration."""
        kwargs: dict[str, Any] = {
            "store": create_store(config),
            "table_name": config.table_name,
            "level": config.level,
            "retention": RetentionPolicy(days_to_keep=config.days_to_keep),
            "label": config.label,
            "silent": config.silent,
            "sweep_probability": config.sweep_probability,
            "poll_interval_s": config.poll_interval_s,
            "error_backoff_s": config.error_backoff_s,
            "tail_queue_size": config.tail_queue_size,
        }
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def levels(self) -> Mapping[str, int]:
        return LEVELS

    @property
    def level(self) -> str:
        """The configured minimum severity name."""
        return self._min_name

    @level.setter
    def level(self, level: int | str) -> None:
        self.set_minimum_level(level)

    def set_minimum_level(self, level: int | str) -> None:
        """Set the filtering threshold by name or rank."""
        self._min_name, self._min_rank = resolve_level(level)

    @property
    def table_name(self) -> str:
        return self._table_name

    @property
    def last_id(self) -> int:
        """The advisory latest id (0 before any row is known)."""
        return self._last_id

    @property
    def sweeper(self) -> RetentionSweeper:
        return self._sweeper

    def add_listener(self, callback: LoggedListener) -> None:
        """Register a "logged" hook. It fires once an insert is scheduled, not once it lands."""
        self._listeners.append(callback)

    def remove_listener(self, callback: LoggedListener) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    async def start(self) -> None:
        """Ensure the table exists and read the current max id. Safe to call repeatedly."""
        if self._started:
            return
        async with self._start_lock:
            if self._started:
                return
            await asyncio.to_thread(self._store.ensure_schema, self._table_name)
            max_id = await asyncio.to_thread(self._store.select_max_id, self._table_name)
            self._advance_last_id(max_id)
            self._started = True
        self._track(self._sweeper.maybe_sweep())

    async def write(self, level: int | str, message: Any, **meta: Any) -> int | None:
        """Persist one record.

        Returns the store-assigned id when the backend reports it, else None
        (also None when the record was dropped by the severity filter).

        Raises:
        - `InvalidLevel` for an unknown rank or name
        - `WriteError` when the store fails the insert (not retried)
        """
        name, rank = resolve_level(level)
        if self.silent or rank > self._min_rank:
            return None

        await self.start()
        self._track(self._sweeper.maybe_sweep())

        if self._label:
            meta.setdefault("label", self._label)
        row = {"level": name, "message": str(message), "meta": meta}

        pending = LogRecord(level=name, message=str(message), meta=meta)
        asyncio.get_running_loop().call_soon(self._notify_logged, pending)

        try:
            new_id = await asyncio.to_thread(self._store.insert, self._table_name, row)
        except Exception as exc:  # noqa: BLE001 - surfaced to the caller as WriteError
            raise WriteError(f"Insert into {self._table_name!r} failed: {exc}") from exc

        if new_id is not None:
            self._advance_last_id(new_id)
        else:
            self._track(asyncio.create_task(self._refresh_last_id(), name="log-sink-refresh-last-id"))
        return new_id

    async def query(
        self,
        options: QueryOptions | Mapping[str, Any] | None = None,
        callback: QueryCallback | None = None,
    ) -> list[LogRecord] | None:
        """Run a bounded historical query (see `QueryEngine.query`)."""
        await self.start()
        return await self._queries.query(options, callback)

    async def subscribe(
        self,
        start: int | TailStart | None = None,
        *,
        poll_interval_s: float | None = None,
        error_backoff_s: float | None = None,
        max_queue_size: int | None = None,
    ) -> TailSubscription:
        """Start tailing newly written records (from now by default)."""
        await self.start()
        subscription = TailSubscription(
            store=self._store,
            table_name=self._table_name,
            cursor=resolve_cursor(start, self._last_id),
            poll_interval_s=self._poll_interval_s if poll_interval_s is None else poll_interval_s,
            error_backoff_s=self._error_backoff_s if error_backoff_s is None else error_backoff_s,
            max_queue_size=self._tail_queue_size if max_queue_size is None else max_queue_size,
        )
        self._subscriptions.add(subscription)
        return subscription.start()

    async def flush(self) -> None:
        """Wait for background sweeps and last-id refreshes scheduled so far."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        """Stop subscriptions, drain background work and close the store.

        Safe to call multiple times.
        """
        if self._closed:
            return
        self._closed = True
        for subscription in list(self._subscriptions):
            await subscription.aclose()
        self._subscriptions.clear()
        await self.flush()
        await self._sweeper.aclose()
        await asyncio.to_thread(self._store.close)

    def _advance_last_id(self, candidate: int | None) -> None:
        if candidate is not None and candidate > self._last_id:
            self._last_id = candidate

    async def _refresh_last_id(self) -> None:
        try:
            max_id = await asyncio.to_thread(self._store.select_max_id, self._table_name)
        except Exception as exc:  # noqa: BLE001 - the advisory id may simply stay stale
            logger.debug("Could not refresh last id for {}: {}", self._table_name, exc)
            return
        self._advance_last_id(max_id)

    def _notify_logged(self, record: LogRecord) -> None:
        for listener in list(self._listeners):
            try:
                listener(record)
            except Exception:  # noqa: BLE001 - a broken hook must not fail writes
                logger.exception("logged listener {!r} failed", listener)

    def _track(self, task: asyncio.Task[Any] | None) -> None:
        if task is None:
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)
