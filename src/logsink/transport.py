"""Log sink transport: buffered writes, range queries and live tailing.

Construction schedules a bootstrap task that connects to the store and
provisions the database, table and `timestamp` index. Calls made before the
bootstrap finishes are buffered and replayed, in arrival order, through the
same public entry points once the transport is ready.

All public methods must be called from the event loop thread. None of them
raise for runtime failures; results and errors are reported through the
optional `callback(error, result)` and the `"logged"` / `"error"` events.
"""

from __future__ import annotations

import asyncio
import logging
import socket
from collections.abc import Callable, Coroutine, Mapping
from typing import Any, Literal

from config import TransportConfig

from .cycle import decycle
from .errors import BootstrapError, TransportClosedError
from .events import EventEmitter
from .models import LogEntry, PendingCall, QueryOptions
from .stores import ChangeFeed, LogStore, create_store
from .stream import LogStream

logger = logging.getLogger(__name__)

State = Literal["initializing", "ready", "closed"]
Callback = Callable[[BaseException | None, Any], Any]

INDEX_FIELD = "timestamp"


class LogSinkTransport(EventEmitter):
    """Persists structured log records into a store and reads them back.

    Members:
    - Config: `config` (frozen `TransportConfig`)
    - Store: `store` (any `LogStore`; built from `config.backend` by default)
    - Lifecycle: `state` is `initializing`, then `ready`, then `closed`
    - Pending calls: `_pending` (replayed once on readiness)
    - Change feed: `_feed` (one per transport, shared by all attached streams)
    """

    def __init__(
        self,
        config: TransportConfig | None = None,
        *,
        store: LogStore | None = None,
        **options: Any,
    ) -> None:
        """Create a transport and start bootstrapping it.

        Either pass a `TransportConfig` or its fields as keyword options. Invalid
        options raise `pydantic.ValidationError` here, synchronously. Must be
        called with a running event loop.
        """
        super().__init__()
        if config is None:
            config = TransportConfig(**options)
        elif options:
            raise TypeError("Pass either a TransportConfig or keyword options, not both")

        self.config = config
        self.name = config.name
        self.level = config.level
        self.label = config.label
        self.silent = config.silent
        self.store_host = config.store_host
        self.hostname = socket.gethostname()
        self.store: LogStore = store if store is not None else create_store(config)

        self.state: State = "initializing"
        self._pending: list[PendingCall] = []
        self._bootstrap_error: BaseException | None = None
        self._tasks: set[asyncio.Task[Any]] = set()

        self._streams: set[LogStream] = set()
        self._feed: ChangeFeed | None = None
        self._feed_task: asyncio.Task[None] | None = None
        self._shutdown_task: asyncio.Task[None] | None = None

        loop = asyncio.get_running_loop()
        self._bootstrap_task = loop.create_task(self._bootstrap(), name=f"{self.name}-bootstrap")

    @property
    def ready(self) -> bool:
        return self.state == "ready"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _ensure(self, step: Coroutine[Any, Any, None], what: str) -> None:
        """Run a provisioning step, tolerating "already exists" failures."""
        try:
            await step
        except Exception as exc:
            if not self.store.is_existence_conflict(exc):
                raise
            logger.debug("%s already exists (%s)", what, exc)

    async def _bootstrap(self) -> None:
        """Connect and provision, then flip to ready and replay pending calls."""
        store = self.store
        try:
            await store.connect()
            await self._ensure(store.create_database(), f"database {store.db!r}")
            await self._ensure(store.create_table(), f"table {store.db}.{store.table}")
            await self._ensure(store.create_index(INDEX_FIELD), f"index {INDEX_FIELD!r}")
            await store.wait_index(INDEX_FIELD)
        except Exception as exc:
            # Re-raised by wait_ready(); the task itself never fails.
            error = BootstrapError(f"Bootstrapping {store.db}.{store.table} failed: {exc}")
            error.__cause__ = exc
            self._fail_bootstrap(error)
            return

        if self.state == "closed":
            return

        self.state = "ready"
        logger.debug("Transport %r ready on %s.%s", self.name, store.db, store.table)
        self._drain_pending()
        self.emit("ready")

    def _fail_bootstrap(self, error: BootstrapError) -> None:
        logger.error("%s", error)
        self._bootstrap_error = error
        self._emit_error(error)
        pending, self._pending = self._pending, []
        for call in pending:
            self._reject(call, error)

    def _drain_pending(self) -> None:
        pending, self._pending = self._pending, []
        if pending:
            logger.debug("Replaying %d pending call(s)", len(pending))
        for call in pending:
            getattr(self, call.method)(*call.args, **call.kwargs)

    def _reject(self, call: PendingCall, error: BaseException) -> None:
        """Fail a buffered call that will never be replayed."""
        if call.method == "stream":
            stream = call.kwargs["options"]["stream"]
            stream.emit("error", error)
            stream.destroy()
            return
        callback = call.kwargs.get("callback")
        if callback is not None:
            callback(error, None)

    def _defer(self, method: str, **kwargs: Any) -> bool:
        """Buffer a call while initializing; return True if the call was consumed.

        After a failed bootstrap or a close, the call is rejected instead.
        """
        if self.state == "ready":
            return False
        call = PendingCall(method=method, kwargs=kwargs)
        if self.state == "closed":
            self._reject(call, TransportClosedError(f"Transport {self.name!r} is closed"))
        elif self._bootstrap_error is not None:
            self._reject(call, self._bootstrap_error)
        else:
            self._pending.append(call)
        return True

    async def wait_ready(self) -> None:
        """Wait for bootstrap to finish.

        Raises `BootstrapError` if it failed, and `TransportClosedError` if the
        transport was closed before or while bootstrapping.
        """
        try:
            await asyncio.shield(self._bootstrap_task)
        except asyncio.CancelledError:
            # Only close() cancels the bootstrap task; a cancelled caller re-raises.
            if self._bootstrap_task.cancelled() and self.state == "closed":
                raise TransportClosedError(f"Transport {self.name!r} is closed") from None
            raise
        if self._bootstrap_error is not None:
            raise self._bootstrap_error
        if self.state == "closed":
            raise TransportClosedError(f"Transport {self.name!r} is closed")

    def _spawn(self, coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro, name=f"{self.name}-{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def flush(self) -> None:
        """Wait until every in-flight write and query has completed."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def _emit_error(self, error: BaseException) -> None:
        if not self.emit("error", error):
            logger.warning("Unhandled transport error: %s", error, exc_info=error)

    def _report(self, error: BaseException, callback: Callback | None) -> None:
        """Fail one call: `"error"` event first, then the callback."""
        self._emit_error(error)
        if callback is not None:
            callback(error, None)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def log(
        self,
        level: str,
        message: str,
        meta: Any = None,
        callback: Callback | None = None,
    ) -> None:
        """Persist one record. `meta` may contain reference cycles."""
        if self._defer("log", level=level, message=message, meta=meta, callback=callback):
            return

        if self.silent:
            if callback is not None:
                callback(None, True)
            return

        try:
            entry = LogEntry(
                level=level,
                message=message,
                meta=decycle(meta),
                hostname=self.hostname if self.store_host else None,
                label=self.label,
            )
        except Exception as exc:  # noqa: BLE001 - reported to the caller, not raised
            self._report(exc, callback)
            return
        self._spawn(self._write(entry, callback), "log")

    async def _write(self, entry: LogEntry, callback: Callback | None) -> None:
        try:
            record = await self.store.insert(entry)
        except Exception as exc:  # noqa: BLE001 - reported to the caller, not raised
            self._report(exc, callback)
            return
        self.emit("logged", record)
        if callback is not None:
            callback(None, True)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(
        self,
        options: Mapping[str, Any] | QueryOptions | Callback | None = None,
        callback: Callback | None = None,
    ) -> None:
        """Read records ordered by `timestamp` within `[from, until)`.

        `query(callback)` runs with default options.
        """
        if callable(options):
            callback, options = options, None
        if self._defer("query", options=options, callback=callback):
            return
        self._spawn(self._query(options, callback), "query")

    async def _query(self, options: Any, callback: Callback | None) -> None:
        try:
            if not isinstance(options, QueryOptions):
                options = QueryOptions.model_validate(dict(options or {}))
            results = await self.store.query(options)
        except Exception as exc:  # noqa: BLE001 - reported to the caller, not raised
            self._report(exc, callback)
            return
        if callback is not None:
            callback(None, results)

    # ------------------------------------------------------------------
    # Live tailing
    # ------------------------------------------------------------------

    def stream(self, options: Mapping[str, Any] | None = None) -> LogStream:
        """Return a stream that emits `"log"` for every newly inserted record.

        `options["stream"]` reuses an existing `LogStream`. Before the transport
        is ready the stream is returned inert and attached on replay.
        """
        options = dict(options or {})
        stream: LogStream = options.get("stream") or LogStream()
        options["stream"] = stream

        if self._defer("stream", options=options):
            return stream
        if stream.destroyed:
            return stream

        stream._on_destroy = self._detach
        self._streams.add(stream)
        if self._feed_task is None:
            self._feed_task = asyncio.get_running_loop().create_task(
                self._pump_changes(), name=f"{self.name}-changes"
            )
        return stream

    def _broadcast(self, event: str, *args: Any) -> None:
        for stream in list(self._streams):
            stream.emit(event, *args)

    async def _pump_changes(self) -> None:
        """Own the shared change feed and fan its inserts out to attached streams.

        A pump that is no longer `_feed_task` (its last stream detached, or the
        transport closed) stops delivering and closes its own feed.
        """
        task = asyncio.current_task()

        def current() -> bool:
            return self._feed_task is task

        try:
            feed = await self.store.changes()
        except Exception as exc:  # noqa: BLE001 - surfaced on the streams
            if current():
                self._feed_task = None
                self._broadcast("error", exc)
                self._release_streams()
            return

        if not current():
            await self._close_feed(feed)
            return

        self._feed = feed
        try:
            async for change in feed:
                if not current():
                    break
                # Only fresh inserts; updates and deletes carry the previous value.
                if change.get("old_val") is not None:
                    continue
                self._broadcast("log", change.get("new_val"))
        except Exception as exc:  # noqa: BLE001 - surfaced on the streams
            logger.debug("Change feed failed: %s", exc)
            if current():
                self._feed = self._feed_task = None
                self._broadcast("error", exc)
                self._release_streams()
                await self._close_feed(feed)
        else:
            if current():
                self._feed = self._feed_task = None
                self._broadcast("end")
                self._release_streams()

    def _release_streams(self) -> None:
        """Emit `"close"` on every attached stream and forget them.

        The streams are left undestroyed; destroying one later is a no-op for
        the transport, and `stream()` can attach it to a fresh feed.
        """
        streams = list(self._streams)
        self._streams.clear()
        for stream in streams:
            stream._on_destroy = None
            stream.emit("close")

    def _detach(self, stream: LogStream) -> None:
        """Drop a destroyed stream; the last one out tears down the shared feed."""
        self._streams.discard(stream)
        if self._streams or self._feed_task is None:
            return
        self._feed_task = None
        feed, self._feed = self._feed, None
        if feed is not None:
            self._spawn(self._close_feed(feed), "close-changes")

    async def _close_feed(self, feed: ChangeFeed) -> None:
        try:
            await feed.close()
        except Exception as exc:  # noqa: BLE001 - cursor may already be gone
            logger.debug("Ignoring error while closing change feed: %s", exc)

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    def close(self) -> asyncio.Task[None]:
        """Close the change feed (if any) and release the connection.

        Fire-and-forget; safe to call multiple times. Returns the shutdown task.
        """
        if self._shutdown_task is None:
            self.state = "closed"
            self._shutdown_task = asyncio.get_running_loop().create_task(
                self._shutdown(), name=f"{self.name}-close"
            )
        return self._shutdown_task

    async def aclose(self) -> None:
        """Close and wait for the shutdown to finish."""
        await self.close()

    async def _shutdown(self) -> None:
        if not self._bootstrap_task.done():
            self._bootstrap_task.cancel()
        try:
            await self._bootstrap_task
        except asyncio.CancelledError:
            pass

        error = TransportClosedError(f"Transport {self.name!r} is closed")
        pending, self._pending = self._pending, []
        for call in pending:
            self._reject(call, error)

        streams = list(self._streams)
        self._streams.clear()
        feed_task, self._feed_task = self._feed_task, None
        feed, self._feed = self._feed, None
        if feed is not None:
            await self._close_feed(feed)
        if feed_task is not None:
            feed_task.cancel()
            await asyncio.gather(feed_task, return_exceptions=True)
        for stream in streams:
            stream._on_destroy = None
            stream.destroy()
            stream.emit("close")

        await self.flush()
        await self.store.close()
        logger.debug("Transport %r closed", self.name)
