"""Live tail of newly written records, by polling.

Each subscription owns a cursor (the last delivered id) and a background task:

    starting -> polling -> (emitting | backoff) -> polling -> ... -> stopped

Delivery is at-least-once and strictly increasing by id within a
subscription. Rows pruned before they were polled leave gaps; consumers must
tolerate missing ids. Only `cancel()` stops the loop; store errors are
reported as events and polling resumes after a backoff.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Literal

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field

from .errors import PollError
from .models import LogRecord, RangeFilter, utc_now
from .stores import LogStore

DEFAULT_POLL_INTERVAL_S = 2.0
DEFAULT_MAX_QUEUE_SIZE = 10000


class TailStart(enum.Enum):
    """Where a subscription starts when no explicit id is given."""

    FROM_NOW = "now"
    FROM_BEGINNING = "beginning"


@dataclass
class TailCursor:
    """Per-subscription state. `last_seen_id` is an exclusive lower bound."""

    last_seen_id: int
    active: bool = True


def resolve_cursor(start: int | TailStart | None, advisory_last_id: int) -> TailCursor:
    """Build the initial cursor for a subscription.

    - explicit id: deliver rows with a greater id
    - `FROM_BEGINNING`: deliver every row
    - `FROM_NOW`, `None` or `-1`: start one below the advisory last id, so the
      next write is never missed even when the advisory id lags
    """
    if start is TailStart.FROM_BEGINNING:
        return TailCursor(last_seen_id=0)
    if start is None or start is TailStart.FROM_NOW or start == -1:
        return TailCursor(last_seen_id=advisory_last_id - 1)
    if isinstance(start, bool) or not isinstance(start, int):
        raise ValueError(f"start must be an int id or a TailStart. Got: {start!r}")
    return TailCursor(last_seen_id=start)


class _Event(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)


class TailRecordEvent(_Event):
    type: Literal["record"] = "record"
    record: LogRecord


class TailErrorEvent(_Event):
    type: Literal["error"] = "error"
    error: PollError
    message: str
    retryable: bool = True
    ts: datetime = Field(default_factory=utc_now)


TailEvent = TailRecordEvent | TailErrorEvent


class TailSubscription:
    """A cancellable polling loop delivering new rows in id order.

    Consume with `await get()` (None once stopped) or `async for event in sub`.
    """

    def __init__(
        self,
        *,
        store: LogStore,
        table_name: str,
        cursor: TailCursor,
        poll_interval_s: float = DEFAULT_POLL_INTERVAL_S,
        error_backoff_s: float = DEFAULT_POLL_INTERVAL_S,
        max_queue_size: int = DEFAULT_MAX_QUEUE_SIZE,
    ) -> None:
        """Create a subscription; call `start()` to begin polling.

        At most `max_queue_size` events are buffered; polling pauses while the
        buffer is full and resumes as the consumer catches up.
        """
        if poll_interval_s < 0 or error_backoff_s < 0:
            raise ValueError("poll_interval_s and error_backoff_s must be >= 0")
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be > 0")
        self._store = store
        self._table_name = table_name
        self._cursor = cursor
        self._poll_interval_s = poll_interval_s
        self._error_backoff_s = error_backoff_s

        # None marks the end of the stream.
        self._queue: asyncio.Queue[TailEvent | None] = asyncio.Queue(maxsize=max_queue_size)
        self._task: asyncio.Task[None] | None = None
        self.delivered = 0

    @property
    def cursor(self) -> TailCursor:
        return self._cursor

    @property
    def active(self) -> bool:
        return self._cursor.active

    def start(self) -> TailSubscription:
        """Start the background poll task (idempotent)."""
        if self._task is None and self.active:
            self._task = asyncio.create_task(self._run(), name=f"tail-{self._table_name}")
        return self

    def cancel(self) -> None:
        """Stop the subscription. No record is delivered after this returns."""
        if not self._cursor.active:
            return
        self._cursor.active = False
        if self._task is not None:
            self._task.cancel()
        # Undelivered events are dropped; this also leaves room for the sentinel.
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
        self._queue.put_nowait(None)

    async def aclose(self) -> None:
        """Cancel and wait for the poll task to finish."""
        self.cancel()
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    async def get(self) -> TailEvent | None:
        """Return the next event, or None once the subscription has stopped."""
        if not self.active:
            return None
        event = await self._queue.get()
        if event is None:
            # Leave the sentinel for any other waiting consumer.
            self._queue.put_nowait(None)
            return None
        if not self.active:
            return None
        if isinstance(event, TailRecordEvent):
            self.delivered += 1
        return event

    def __aiter__(self) -> TailSubscription:
        return self

    async def __anext__(self) -> TailEvent:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def _run(self) -> None:
        while self._cursor.active:
            range_filter = RangeFilter(min_id=self._cursor.last_seen_id + 1, order_by="id", order="asc")
            try:
                records = await asyncio.to_thread(self._store.select_range, self._table_name, range_filter)
            except Exception as exc:  # noqa: BLE001 - reported as an event; the loop keeps going
                if not self._cursor.active:
                    return
                err = PollError(f"Polling {self._table_name!r} failed: {exc}")
                err.__cause__ = exc
                logger.warning("{}", err)
                await self._queue.put(TailErrorEvent(error=err, message=str(err)))
                await asyncio.sleep(self._error_backoff_s)
                continue

            # Results of a read that was in flight during cancel() are discarded.
            for record in records:
                if not self._cursor.active:
                    return
                # Blocks while the consumer is behind; no reads happen meanwhile.
                await self._queue.put(TailRecordEvent(record=record))
                if not self._cursor.active:
                    return
                if record.id is not None:
                    self._cursor.last_seen_id = record.id

            await asyncio.sleep(self._poll_interval_s)
