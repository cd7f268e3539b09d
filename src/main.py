"""Demo entrypoint wiring the log sink together.

This module intentionally contains a small, end-to-end "smoke test" that:

- Loads configuration from environment.
- Opens the configured store and log sink.
- Starts a tail subscription, writes a few records at different severities,
  and prints what the tail and a historical query observe.

It is **not** intended to be production orchestration logic; it is a convenient
manual integration harness.
"""

from __future__ import annotations

import asyncio
import sys
from datetime import timedelta

from loguru import logger

from config import load_config
from logsink import LogSink, TailErrorEvent, TailRecordEvent, TailStart, TailSubscription
from logsink.models import utc_now

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
    "<level>{message}</level>"
)


def configure_logging(level: str) -> None:
    """Route the sink's own diagnostics to stderr."""
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)


async def _print_tail(subscription: TailSubscription) -> None:
    """Continuously print events observed on the given subscription."""
    async for event in subscription:
        if isinstance(event, TailRecordEvent):
            r = event.record
            print(f"[tail] #{r.id} {r.level}: {r.message} {r.meta or ''}")
        elif isinstance(event, TailErrorEvent):
            print(f"[tail] error: {event.message}")


async def run_demo() -> None:
    """Write, tail and query a handful of records."""
    cfg = load_config()
    configure_logging(cfg.sink.log_level)

    sink = LogSink.from_config(cfg.sink)
    started_at = utc_now() - timedelta(seconds=1)

    subscription = await sink.subscribe(TailStart.FROM_NOW)
    tail_task = asyncio.create_task(_print_tail(subscription), name="tail-printer")
    try:
        await sink.write("debug", "below the default threshold; dropped")
        await sink.write("warning", "disk usage above 80%", host="demo")
        await sink.write(3, "request failed", status=500, path="/orders")
        await sink.write("crit", "replica lag exceeded", lag_s=42)

        # Give the tail a couple of poll intervals to catch up.
        await asyncio.sleep(cfg.sink.poll_interval_s * 2 + 0.5)

        records = await sink.query({"from": started_at, "until": utc_now(), "order": "asc"})
        for r in records or []:
            print(f"[query] #{r.id} {r.timestamp:%H:%M:%S} {r.level}: {r.message}")
        logger.info("Advisory last id: {}", sink.last_id)
    finally:
        subscription.cancel()
        await asyncio.gather(tail_task, return_exceptions=True)
        await sink.aclose()


def main() -> None:
    """CLI entrypoint for running the demo with `python src/main.py`."""
    asyncio.run(run_demo())


if __name__ == "__main__":
    main()
