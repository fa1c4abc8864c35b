from __future__ import annotations

import pytest


@pytest.fixture(autouse=True)
def _no_threads_in_unit_tests(monkeypatch: pytest.MonkeyPatch):
    """Run `asyncio.to_thread` inline for unit tests.

    The DuckDB store uses `asyncio.to_thread` to keep the event loop unblocked.
    Running it inline keeps unit tests deterministic: each store call completes
    without yielding, so replayed calls finish in the order they were issued.
    """

    async def _to_thread(func, /, *args, **kwargs):  # noqa: ANN001, D401
        return func(*args, **kwargs)

    monkeypatch.setattr("logsink.stores.duckdb_store.asyncio.to_thread", _to_thread)
    yield
