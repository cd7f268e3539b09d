"""Error taxonomy for the log sink.

Errors on the caller's own request (write, query) are raised to that caller.
Errors in background activity are either logged (sweep) or delivered as
side-channel events that do not stop the activity (poll).
"""

from __future__ import annotations


class LogSinkError(RuntimeError):
    """Base class for all log sink errors."""


class InvalidLevel(LogSinkError, ValueError):
    """A severity rank or name has no entry in the severity table."""

    def __init__(self, level: object) -> None:
        super().__init__(f"Unknown log level: {level!r}")
        self.level = level


class WriteError(LogSinkError):
    """The store rejected or failed an insert."""


class QueryError(LogSinkError):
    """The store rejected a read, or the query options were invalid."""


class PollError(LogSinkError):
    """A store read failed while tailing. Never fatal to the poll loop."""


class SweepError(LogSinkError):
    """A retention delete failed. Logged only."""
