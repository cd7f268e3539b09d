"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into strongly-typed Pydantic models.
- Validating fields and providing actionable error messages.
"""

import os
from typing import Literal, TypeVar

import dotenv
from pydantic import BaseModel, Field, field_validator

from logsink.levels import LEVELS
from logsink.stores import check_identifier

_T = TypeVar("_T", int, float)


def _get_env_str(name: str, default: str) -> str:
    """Read a string env var with a default (blank counts as unset)."""
    value = os.getenv(name, "").strip()
    return value or default


def _get_env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false). Got: {raw!r}")


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


def _get_env_optional_int(name: str) -> int | None:
    """Read an optional int env var; blank or "off"/"none" disables it."""
    raw = os.getenv(name)
    if raw is None or raw.strip().lower() in {"", "off", "none", "null", "disabled"}:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an int or empty. Got: {raw!r}") from exc


class LogSinkConfig(BaseModel):
    """Configuration for the SQL log sink."""

    table_name: str = Field(default="app_logs", description="Table holding log records")
    client: Literal["duckdb", "sqlalchemy"] = Field(default="duckdb", description="Store backend")
    connection: str = Field(
        default="app_logs.duckdb",
        description="DuckDB database path, or a SQLAlchemy URL when client is 'sqlalchemy'",
    )
    level: str = Field(default="warning", description="Minimum severity persisted")
    days_to_keep: int | None = Field(default=None, ge=0, description="Retention window in days; None disables")
    label: str = Field(default="", description="Label stored with every record when set")
    silent: bool = Field(default=False, description="Suppress all writes")

    # Optional tuning knobs
    poll_interval_s: float = Field(default=2.0, ge=0, description="Delay between tail polls (seconds)")
    error_backoff_s: float = Field(default=2.0, ge=0, description="Delay after a failed tail poll (seconds)")
    tail_queue_size: int = Field(default=10000, gt=0, description="Events buffered per tail subscription")
    sweep_probability: float = Field(default=0.1, ge=0, le=1, description="Chance a write triggers a sweep")
    log_level: str = Field(default="INFO", description="Level for the sink's own diagnostics")

    @field_validator("table_name")
    def validate_table_name(cls, v: str) -> str:
        """Table names are interpolated into SQL, so only plain identifiers are allowed."""
        return check_identifier(v)

    @field_validator("level")
    def validate_level(cls, v: str) -> str:
        """Validate the minimum severity against the severity table."""
        normalized = v.strip().lower()
        if normalized not in LEVELS:
            raise ValueError(f"LOGSINK_LEVEL must be one of {list(LEVELS)}. Got: {v!r}")
        return normalized

    @field_validator("connection")
    def validate_connection(cls, v: str) -> str:
        """Validate the connection string is set."""
        if not v or not v.strip():
            raise ValueError("LOGSINK_CONNECTION must not be empty.")
        return v.strip()


class Config(BaseModel):
    """Top-level application configuration."""

    sink: LogSinkConfig = Field(default_factory=LogSinkConfig, description="Log sink configuration")


def load_config() -> Config:
    """Load application configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - Raises `ValueError` with actionable messages when a value cannot be parsed
      or fails validation.
    """
    # Load variables from `.env` into the process environment (without overriding
    # already-set env vars).
    dotenv.load_dotenv()

    sink = LogSinkConfig(
        table_name=_get_env_str("LOGSINK_TABLE_NAME", "app_logs"),
        client=_get_env_str("LOGSINK_CLIENT", "duckdb"),
        connection=_get_env_str("LOGSINK_CONNECTION", "app_logs.duckdb"),
        level=_get_env_str("LOGSINK_LEVEL", "warning"),
        days_to_keep=_get_env_optional_int("LOGSINK_DAYS_TO_KEEP"),
        label=_get_env_str("LOGSINK_LABEL", ""),
        silent=_get_env_bool("LOGSINK_SILENT", False),
        poll_interval_s=_get_env_number("LOGSINK_POLL_INTERVAL", 2.0, float),
        error_backoff_s=_get_env_number("LOGSINK_ERROR_BACKOFF", 2.0, float),
        tail_queue_size=_get_env_number("LOGSINK_TAIL_QUEUE_SIZE", 10000, int),
        sweep_probability=_get_env_number("LOGSINK_SWEEP_PROBABILITY", 0.1, float),
        log_level=_get_env_str("LOGSINK_LOG_LEVEL", "INFO").upper(),
    )
    return Config(sink=sink)
