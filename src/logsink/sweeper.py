"""Opportunistic retention pruning.

There is no scheduler thread: the write path calls `maybe_sweep()` on every
write, and a delete actually runs with a small probability. Under steady write
volume cleanup still happens over time, while its cost stays bounded.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from loguru import logger

from .errors import SweepError
from .models import utc_now
from .stores import LogStore


@dataclass(frozen=True)
class RetentionPolicy:
    """How long records are kept. `days_to_keep=None` disables pruning."""

    days_to_keep: int | None = None

    def __post_init__(self) -> None:
        if self.days_to_keep is not None and self.days_to_keep < 0:
            raise ValueError(f"days_to_keep must be >= 0. Got: {self.days_to_keep}")

    @property
    def enabled(self) -> bool:
        return self.days_to_keep is not None

    def cutoff(self, now: datetime) -> datetime:
        """Rows with a timestamp strictly before this instant are expired."""
        if self.days_to_keep is None:
            raise ValueError("Retention is disabled; there is no cutoff")
        return now - timedelta(days=self.days_to_keep)


class RetentionSweeper:
    """Deletes expired rows in a background task, at most one sweep at a time."""

    def __init__(
        self,
        *,
        store: LogStore,
        table_name: str,
        policy: RetentionPolicy,
        probability: float = 0.1,
        rng: random.Random | None = None,
    ) -> None:
        """Create a sweeper.

        Args:
            store: Backend that owns the table.
            table_name: Table to prune.
            policy: Retention window.
            probability: Chance that a single `maybe_sweep()` call runs a delete.
            rng: Random source; injectable for deterministic tests.
        """
        if not 0.0 <= probability <= 1.0:
            raise ValueError(f"probability must be within [0, 1]. Got: {probability}")
        self._store = store
        self._table_name = table_name
        self._policy = policy
        self._probability = probability
        self._rng = rng or random.Random()
        self._task: asyncio.Task[int] | None = None

    @property
    def policy(self) -> RetentionPolicy:
        return self._policy

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def maybe_sweep(self) -> asyncio.Task[int] | None:
        """Start a background sweep with the configured probability.

        Returns the started task, or None when nothing was started. The cutoff
        is fixed now, so rows written after this call survive this sweep.
        """
        if not self._policy.enabled:
            return None
        if self._rng.random() >= self._probability:
            return None
        if self.running:
            return None

        cutoff = self._policy.cutoff(utc_now())
        self._task = asyncio.create_task(self.sweep(cutoff), name=f"retention-sweep-{self._table_name}")
        return self._task

    async def sweep(self, cutoff: datetime | None = None) -> int:
        """Delete expired rows now and return how many were removed.

        Failures are logged and reported as 0 deleted rows; they never reach
        the writer.
        """
        if cutoff is None:
            if not self._policy.enabled:
                return 0
            cutoff = self._policy.cutoff(utc_now())

        try:
            deleted = await asyncio.to_thread(self._store.delete_older_than, self._table_name, cutoff)
        except Exception as exc:  # noqa: BLE001 - maintenance must not degrade writes
            err = SweepError(f"Retention sweep of {self._table_name!r} failed: {exc}")
            err.__cause__ = exc
            logger.warning("{}", err)
            return 0

        if deleted:
            logger.info("Pruned {} expired log records from {} (cutoff {})", deleted, self._table_name, cutoff)
        return deleted

    async def aclose(self) -> None:
        """Wait for an in-flight sweep, if any."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)
            self._task = None
