from __future__ import annotations

import asyncio
from typing import Any

import pytest

from logsink import BootstrapError, LogEntry, LogSinkTransport, QueryOptions, TransportClosedError


class _AlreadyExists(Exception):
    pass


class _FakeFeed:
    def __init__(self) -> None:
        self.queue: asyncio.Queue[Any] = asyncio.Queue()
        self.closed = 0

    def __aiter__(self) -> _FakeFeed:
        return self

    async def __anext__(self) -> dict[str, Any]:
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item

    async def close(self) -> None:
        self.closed += 1
        self.queue.put_nowait(None)

    def insert(self, record: dict[str, Any]) -> None:
        self.queue.put_nowait({"old_val": None, "new_val": record})


class _FakeStore:
    db = "test"
    table = "log"

    def __init__(
        self,
        *,
        conflicts: set[str] | None = None,
        fail: dict[str, Exception] | None = None,
    ) -> None:
        self.conflicts = conflicts or set()
        self.fail = fail or {}
        self.calls: list[str] = []
        self.inserted: list[LogEntry] = []
        self.queries: list[QueryOptions] = []
        self.feeds: list[_FakeFeed] = []
        self.closed = 0

    async def _step(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]
        if name in self.conflicts:
            raise _AlreadyExists(f"{name}: already exists")

    async def connect(self) -> None:
        await self._step("connect")

    async def create_database(self) -> None:
        await self._step("create_database")

    async def create_table(self) -> None:
        await self._step("create_table")

    async def create_index(self, field: str) -> None:
        await self._step(f"create_index:{field}")

    async def wait_index(self, field: str) -> None:
        await self._step(f"wait_index:{field}")

    def is_existence_conflict(self, exc: BaseException) -> bool:
        return isinstance(exc, _AlreadyExists)

    async def insert(self, entry: LogEntry) -> dict[str, Any]:
        await self._step("insert")
        self.inserted.append(entry)
        return entry.to_document()

    async def query(self, options: QueryOptions) -> list[dict[str, Any]]:
        await self._step("query")
        self.queries.append(options)
        return []

    async def changes(self) -> _FakeFeed:
        await self._step("changes")
        feed = _FakeFeed()
        self.feeds.append(feed)
        return feed

    async def close(self) -> None:
        self.closed += 1


class _SlowConnectStore(_FakeStore):
    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def connect(self) -> None:
        await self._step("connect")
        await self.release.wait()


async def _settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_bootstrap_runs_provisioning_steps_in_order() -> None:
    store = _FakeStore()
    transport = LogSinkTransport(store=store)
    await transport.wait_ready()

    assert store.calls == [
        "connect",
        "create_database",
        "create_table",
        "create_index:timestamp",
        "wait_index:timestamp",
    ]
    assert transport.ready


@pytest.mark.asyncio
async def test_existence_conflicts_are_tolerated() -> None:
    store = _FakeStore(conflicts={"create_database", "create_table", "create_index:timestamp"})
    transport = LogSinkTransport(store=store)

    await transport.wait_ready()

    assert transport.ready
    assert store.calls[-1] == "wait_index:timestamp"


@pytest.mark.asyncio
async def test_other_provisioning_errors_are_fatal() -> None:
    store = _FakeStore(fail={"create_table": RuntimeError("disk full")})
    transport = LogSinkTransport(store=store)
    errors: list[BaseException] = []
    transport.on("error", errors.append)
    results: list[Any] = []
    transport.log("info", "queued", None, lambda err, ok: results.append(err))

    with pytest.raises(BootstrapError) as excinfo:
        await transport.wait_ready()

    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert transport.state == "initializing"
    assert "create_index:timestamp" not in store.calls
    assert errors == [excinfo.value]
    assert results == [excinfo.value]

    transport.log("info", "late", None, lambda err, ok: results.append(err))
    assert results[-1] is excinfo.value
    assert store.inserted == []


@pytest.mark.asyncio
async def test_write_failure_is_reported_through_event_and_callback() -> None:
    boom = RuntimeError("write rejected")
    store = _FakeStore(fail={"insert": boom})
    transport = LogSinkTransport(store=store)
    await transport.wait_ready()
    errors: list[BaseException] = []
    transport.on("error", errors.append)
    results: list[tuple[Any, Any]] = []

    transport.log("info", "lost", {"k": 1}, lambda err, ok: results.append((err, ok)))
    await transport.flush()

    assert errors == [boom]
    assert results == [(boom, None)]
    assert transport.ready


@pytest.mark.asyncio
async def test_query_defaults_are_normalized() -> None:
    store = _FakeStore()
    transport = LogSinkTransport(store=store)
    await transport.wait_ready()

    transport.query(lambda err, results: None)
    await transport.flush()

    (options,) = store.queries
    assert options.from_.year == 1970
    assert options.order == "asc"
    assert options.start == 0
    assert options.rows == 10
    assert options.fields == ("id", "level", "message", "meta", "timestamp", "hostname", "label")


@pytest.mark.asyncio
async def test_feed_forwards_only_fresh_inserts() -> None:
    store = _FakeStore()
    transport = LogSinkTransport(store=store)
    await transport.wait_ready()
    stream = transport.stream()
    received: list[dict[str, Any]] = []
    stream.on("log", received.append)
    await _settle()

    (feed,) = store.feeds
    feed.queue.put_nowait({"old_val": {"message": "before"}, "new_val": {"message": "after"}})
    feed.queue.put_nowait({"old_val": {"message": "gone"}, "new_val": None})
    feed.insert({"message": "fresh"})
    await _settle()

    assert received == [{"message": "fresh"}]
    await transport.aclose()


@pytest.mark.asyncio
async def test_shared_feed_is_released_by_last_stream_only() -> None:
    store = _FakeStore()
    transport = LogSinkTransport(store=store)
    await transport.wait_ready()
    first = transport.stream()
    second = transport.stream()
    first_seen: list[dict[str, Any]] = []
    second_seen: list[dict[str, Any]] = []
    first.on("log", first_seen.append)
    second.on("log", second_seen.append)
    await _settle()

    assert len(store.feeds) == 1
    feed = store.feeds[0]

    first.destroy()
    feed.insert({"message": "after first destroyed"})
    await _settle()

    assert feed.closed == 0
    assert first_seen == []
    assert second_seen == [{"message": "after first destroyed"}]

    second.destroy()
    await _settle()
    assert feed.closed == 1

    third = transport.stream()
    await _settle()
    assert len(store.feeds) == 2
    third.destroy()
    await transport.aclose()


@pytest.mark.asyncio
async def test_destroy_is_idempotent() -> None:
    transport = LogSinkTransport(store=_FakeStore())
    await transport.wait_ready()
    stream = transport.stream()
    ends: list[str] = []
    stream.on("end", lambda: ends.append("end"))

    stream.destroy()
    stream.destroy()

    assert stream.destroyed
    assert ends == ["end"]


@pytest.mark.asyncio
async def test_reused_stream_handle_is_returned() -> None:
    transport = LogSinkTransport(store=_FakeStore())
    existing = transport.stream()

    assert transport.stream({"stream": existing}) is existing
    await transport.wait_ready()
    await _settle()
    existing.destroy()


@pytest.mark.asyncio
async def test_feed_error_releases_feed_and_streams_without_destroying_them() -> None:
    store = _FakeStore()
    transport = LogSinkTransport(store=store)
    await transport.wait_ready()
    stream = transport.stream()
    events: list[Any] = []
    stream.on("error", events.append)
    stream.on("end", lambda: events.append("end"))
    stream.on("close", lambda: events.append("close"))
    await _settle()

    boom = RuntimeError("feed lost")
    (feed,) = store.feeds
    feed.queue.put_nowait(boom)
    await _settle()

    assert events == [boom, "close"]
    assert not stream.destroyed
    assert feed.closed == 1
    assert transport._streams == set()
    assert transport._feed_task is None

    stream.destroy()
    assert feed.closed == 1

    replacement = transport.stream()
    received: list[dict[str, Any]] = []
    replacement.on("log", received.append)
    await _settle()
    assert len(store.feeds) == 2
    store.feeds[1].insert({"message": "back"})
    await _settle()
    assert received == [{"message": "back"}]
    await transport.aclose()


@pytest.mark.asyncio
async def test_failed_feed_open_releases_streams() -> None:
    store = _FakeStore(fail={"changes": RuntimeError("no feeds here")})
    transport = LogSinkTransport(store=store)
    await transport.wait_ready()
    stream = transport.stream()
    events: list[Any] = []
    stream.on("error", lambda exc: events.append(str(exc)))
    stream.on("close", lambda: events.append("close"))
    await _settle()

    assert events == ["no feeds here", "close"]
    assert transport._streams == set()
    assert not stream.destroyed
    await transport.aclose()


@pytest.mark.asyncio
async def test_close_is_idempotent_and_releases_once() -> None:
    store = _FakeStore()
    transport = LogSinkTransport(store=store)
    await transport.wait_ready()
    stream = transport.stream()
    await _settle()

    first = transport.close()
    second = transport.close()
    assert first is second
    await transport.aclose()

    assert store.closed == 1
    assert store.feeds[0].closed == 1
    assert stream.destroyed

    results: list[Any] = []
    transport.log("info", "too late", None, lambda err, ok: results.append(err))
    assert isinstance(results[0], TransportClosedError)


@pytest.mark.asyncio
async def test_close_before_ready_rejects_buffered_calls() -> None:
    store = _FakeStore()
    transport = LogSinkTransport(store=store)
    results: list[Any] = []
    transport.log("info", "queued", None, lambda err, ok: results.append(err))
    stream = transport.stream()

    await transport.aclose()

    assert transport.state == "closed"
    assert isinstance(results[0], TransportClosedError)
    assert stream.destroyed
    assert store.inserted == []
    assert store.closed == 1


@pytest.mark.asyncio
async def test_wait_ready_raises_closed_when_closed_during_bootstrap() -> None:
    store = _SlowConnectStore()
    transport = LogSinkTransport(store=store)
    waiter = asyncio.create_task(transport.wait_ready())
    await _settle()
    assert store.calls == ["connect"]

    transport.close()

    with pytest.raises(TransportClosedError):
        await waiter
    await transport.aclose()
    assert store.closed == 1


@pytest.mark.asyncio
async def test_wait_ready_raises_closed_after_close() -> None:
    transport = LogSinkTransport(store=_FakeStore())
    await transport.wait_ready()
    await transport.aclose()

    with pytest.raises(TransportClosedError):
        await transport.wait_ready()

    unstarted = LogSinkTransport(store=_FakeStore())
    unstarted.close()
    with pytest.raises(TransportClosedError):
        await unstarted.wait_ready()
    await unstarted.aclose()


@pytest.mark.asyncio
async def test_cancelling_a_waiter_leaves_bootstrap_running() -> None:
    store = _SlowConnectStore()
    transport = LogSinkTransport(store=store)
    waiter = asyncio.create_task(transport.wait_ready())
    await _settle()

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    store.release.set()
    await transport.wait_ready()
    assert transport.ready
    await transport.aclose()


@pytest.mark.asyncio
async def test_unawaited_bootstrap_failure_is_only_reported_as_event() -> None:
    store = _FakeStore(fail={"connect": ConnectionRefusedError("refused")})
    transport = LogSinkTransport(store=store)
    errors: list[BaseException] = []
    transport.on("error", errors.append)
    await _settle()

    task = transport._bootstrap_task
    assert task.done()
    assert task.exception() is None
    (error,) = errors
    assert isinstance(error, BootstrapError)
    assert isinstance(error.__cause__, ConnectionRefusedError)
    await transport.aclose()
