"""Durable, queryable SQL log sink.

This package provides:
- A write path that persists structured log records at or above a minimum
  severity and tracks an advisory latest id.
- Opportunistic, probability-throttled retention pruning.
- Bounded historical queries over a time range.
- A polling "tail" feed delivering new records to subscribers in id order.

Blocking store I/O always runs off the event loop.
"""

from .errors import InvalidLevel, LogSinkError, PollError, QueryError, SweepError, WriteError
from .levels import LEVELS, level_name, level_rank, resolve_level
from .models import LogRecord, RangeFilter
from .query import QueryEngine, QueryOptions
from .sink import LogSink
from .stores import DuckDBLogStore, InMemoryLogStore, LogStore, SQLAlchemyLogStore, create_store
from .sweeper import RetentionPolicy, RetentionSweeper
from .tail import TailCursor, TailErrorEvent, TailRecordEvent, TailStart, TailSubscription

__all__ = [
    "LEVELS",
    "DuckDBLogStore",
    "InMemoryLogStore",
    "InvalidLevel",
    "LogRecord",
    "LogSink",
    "LogSinkError",
    "LogStore",
    "PollError",
    "QueryEngine",
    "QueryError",
    "QueryOptions",
    "RangeFilter",
    "RetentionPolicy",
    "RetentionSweeper",
    "SQLAlchemyLogStore",
    "SweepError",
    "TailCursor",
    "TailErrorEvent",
    "TailRecordEvent",
    "TailStart",
    "TailSubscription",
    "WriteError",
    "create_store",
    "level_name",
    "level_rank",
    "resolve_level",
]
