from __future__ import annotations

import pytest
from loguru import logger

from logsink import DuckDBLogStore, InMemoryLogStore, SQLAlchemyLogStore


@pytest.fixture(autouse=True)
def _no_threads_in_unit_tests(monkeypatch: pytest.MonkeyPatch):
    """Run `asyncio.to_thread` inline for unit tests.

    The sink isolates store I/O with `asyncio.to_thread`. In unit tests, this
    can create threadpool workers that keep the Python process alive longer
    than expected under some runtimes.
    """

    async def _to_thread(func, /, *args, **kwargs):  # noqa: ANN001, D401
        return func(*args, **kwargs)

    monkeypatch.setattr("logsink.sink.asyncio.to_thread", _to_thread)
    yield


@pytest.fixture
def log_messages():
    """Capture loguru output emitted during a test."""
    messages: list[str] = []
    handler_id = logger.add(lambda m: messages.append(str(m)), level="DEBUG", format="{level} {message}")
    yield messages
    logger.remove(handler_id)


@pytest.fixture
def duckdb_store():
    store = DuckDBLogStore(path=":memory:")
    yield store
    store.close()


@pytest.fixture(params=["duckdb", "sqlalchemy", "memory"])
def any_store(request: pytest.FixtureRequest):
    """Each store backend in turn."""
    if request.param == "duckdb":
        store = DuckDBLogStore(path=":memory:")
    elif request.param == "sqlalchemy":
        store = SQLAlchemyLogStore(url="sqlite://")
    else:
        store = InMemoryLogStore()
    yield store
    store.close()
