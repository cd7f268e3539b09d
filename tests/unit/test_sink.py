from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from config import LogSinkConfig
from logsink import InMemoryLogStore, InvalidLevel, LogRecord, LogSink, WriteError
from logsink.models import utc_now


class _FailingInsertStore(InMemoryLogStore):
    def insert(self, table_name, row):  # noqa: ANN001
        raise ConnectionError("database is gone")


@pytest.mark.asyncio
async def test_write_below_minimum_is_dropped_and_error_is_queryable(duckdb_store) -> None:
    sink = LogSink(store=duckdb_store, level="warning")
    t0 = utc_now() - timedelta(seconds=1)

    assert await sink.write("debug", "x") is None
    new_id = await sink.write("error", "boom")
    assert isinstance(new_id, int)

    records = await sink.query({"from": t0, "until": utc_now() + timedelta(seconds=1)})
    assert len(records) == 1
    assert records[0].message == "boom"
    assert records[0].level == "error"
    assert records[0].id == new_id


@pytest.mark.asyncio
async def test_write_accepts_ranks_and_persists_names(duckdb_store) -> None:
    sink = LogSink(store=duckdb_store, level=7)
    await sink.write(3, "by rank")
    await sink.write("NOTICE", "by name")

    records = await sink.query({"order": "asc"})
    assert [(r.level, r.message) for r in records] == [("error", "by rank"), ("notice", "by name")]


@pytest.mark.asyncio
@pytest.mark.parametrize("level", [8, -1, "verbose", True])
async def test_write_rejects_unknown_levels(duckdb_store, level) -> None:
    sink = LogSink(store=duckdb_store)
    with pytest.raises(InvalidLevel):
        await sink.write(level, "x")


def test_unknown_minimum_level_is_rejected(duckdb_store) -> None:
    with pytest.raises(InvalidLevel):
        LogSink(store=duckdb_store, level="loud")


@pytest.mark.asyncio
async def test_minimum_level_can_be_changed(duckdb_store) -> None:
    sink = LogSink(store=duckdb_store)
    assert sink.level == "warning"
    assert await sink.write("info", "dropped") is None

    sink.set_minimum_level("info")
    assert await sink.write("info", "kept") is not None

    sink.level = 0
    assert sink.level == "emerg"
    assert await sink.write("alert", "dropped too") is None

    records = await sink.query()
    assert [r.message for r in records] == ["kept"]


@pytest.mark.asyncio
async def test_ids_strictly_increase_across_writes(duckdb_store) -> None:
    sink = LogSink(store=duckdb_store)
    ids = [await sink.write("error", f"e{i}") for i in range(10)]
    assert all(b > a for a, b in zip(ids, ids[1:]))
    assert sink.last_id == ids[-1]


@pytest.mark.asyncio
async def test_extra_fields_and_label_are_persisted(duckdb_store) -> None:
    sink = LogSink(store=duckdb_store, label="api")
    await sink.write("error", "request failed", status=500, path="/orders")

    (record,) = await sink.query()
    assert record.meta == {"label": "api", "status": 500, "path": "/orders"}


@pytest.mark.asyncio
async def test_silent_sink_writes_nothing(duckdb_store) -> None:
    sink = LogSink(store=duckdb_store, silent=True)
    assert await sink.write("emerg", "nobody hears this") is None
    assert await sink.query() == []


@pytest.mark.asyncio
async def test_failed_insert_raises_write_error() -> None:
    sink = LogSink(store=_FailingInsertStore())
    with pytest.raises(WriteError) as excinfo:
        await sink.write("error", "boom")
    assert isinstance(excinfo.value.__cause__, ConnectionError)


@pytest.mark.asyncio
async def test_logged_notification_fires_after_scheduling(duckdb_store) -> None:
    sink = LogSink(store=duckdb_store)
    seen: list[LogRecord] = []
    sink.add_listener(seen.append)

    await sink.write("error", "boom", request_id="r1")
    await asyncio.sleep(0)

    assert len(seen) == 1
    assert seen[0].message == "boom"
    assert seen[0].meta == {"request_id": "r1"}
    # The notification describes the pending record, before an id exists.
    assert seen[0].id is None

    sink.remove_listener(seen.append)
    await sink.write("error", "again")
    await asyncio.sleep(0)
    assert len(seen) == 1


@pytest.mark.asyncio
async def test_logged_notification_fires_even_when_insert_fails() -> None:
    sink = LogSink(store=_FailingInsertStore())
    seen: list[LogRecord] = []
    sink.add_listener(seen.append)

    with pytest.raises(WriteError):
        await sink.write("error", "boom")
    await asyncio.sleep(0)
    assert [r.message for r in seen] == ["boom"]


@pytest.mark.asyncio
async def test_broken_listener_does_not_fail_writes(duckdb_store, log_messages) -> None:
    sink = LogSink(store=duckdb_store)

    def _broken(_record: LogRecord) -> None:
        raise RuntimeError("listener bug")

    sink.add_listener(_broken)
    assert await sink.write("error", "boom") is not None
    await asyncio.sleep(0)
    assert any("listener" in m for m in log_messages)


@pytest.mark.asyncio
async def test_advisory_last_id_is_refreshed_when_store_does_not_report_ids() -> None:
    store = InMemoryLogStore()
    sink = LogSink(store=store)

    assert await sink.write("error", "a") is None
    assert await sink.write("error", "b") is None
    await sink.flush()
    assert sink.last_id == 2


@pytest.mark.asyncio
async def test_start_reads_existing_max_id(duckdb_store) -> None:
    duckdb_store.ensure_schema("app_logs")
    for i in range(3):
        duckdb_store.insert("app_logs", {"level": "error", "message": str(i)})

    sink = LogSink(store=duckdb_store)
    assert sink.last_id == 0
    await sink.start()
    assert sink.last_id == 3


@pytest.mark.asyncio
async def test_aclose_is_idempotent() -> None:
    sink = LogSink(store=InMemoryLogStore())
    await sink.write("error", "a")
    await sink.aclose()
    await sink.aclose()


@pytest.mark.asyncio
async def test_from_config_builds_a_working_sink() -> None:
    cfg = LogSinkConfig(client="sqlalchemy", connection="sqlite://", table_name="svc_logs", level="info", label="svc")
    sink = LogSink.from_config(cfg)
    try:
        assert sink.table_name == "svc_logs"
        assert sink.level == "info"
        new_id = await sink.write("info", "hello")
        assert new_id == 1
        (record,) = await sink.query()
        assert record.meta == {"label": "svc"}
    finally:
        await sink.aclose()
