"""DuckDB store for durable local persistence.

The "database" maps to a DuckDB schema and the table lives inside it. DuckDB
calls are synchronous, so every call runs via `asyncio.to_thread` under a lock
to keep the event loop unblocked. DuckDB has no change feed; inserts made
through this store are published to in-process subscribers instead.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import threading
from collections.abc import Mapping, Sequence
from typing import Any

import duckdb

from ..models import OPTIONAL_FIELDS, LogEntry, QueryOptions, from_epoch_us, to_epoch_us
from .base import Change

logger = logging.getLogger(__name__)

DEFAULT_DATABASE = ":memory:"

_RETURNING = 'id, level, message, meta, epoch_us("timestamp") AS "timestamp", hostname, label'


def _column_sql(name: str) -> str:
    # Instants leave DuckDB as integer microseconds so reads never depend on
    # the session time zone.
    if name == "timestamp":
        return 'epoch_us("timestamp") AS "timestamp"'
    return f'"{name}"'


def _decode_row(columns: Sequence[str], row: Sequence[Any]) -> dict[str, Any]:
    record: dict[str, Any] = {}
    for name, value in zip(columns, row):
        if value is None and name in OPTIONAL_FIELDS:
            continue
        if name == "timestamp":
            value = from_epoch_us(value)
        elif name == "meta":
            value = json.loads(value)
        record[name] = value
    return record


class _DuckDBChangeFeed:
    """Queue-backed feed over the owning store's inserts."""

    def __init__(self, store: DuckDBLogStore, queue: asyncio.Queue[Change | None]) -> None:
        self._store = store
        self._queue = queue

    def __aiter__(self) -> _DuckDBChangeFeed:
        return self

    async def __anext__(self) -> Change:
        change = await self._queue.get()
        if change is None:
            raise StopAsyncIteration
        return change

    async def close(self) -> None:
        self._store._unsubscribe(self._queue)
        self._queue.put_nowait(None)


class DuckDBLogStore:
    """DuckDB-backed log table (file or in-memory)."""

    def __init__(self, *, db: str = "test", table: str = "log", connection: Any = None) -> None:
        """Create a store; nothing is opened until `connect()`.

        Args:
            db: Schema holding the log table.
            table: Log table name.
            connection: None (in-memory database), a mapping of `duckdb.connect`
                keyword arguments, or a callable returning a `DuckDBPyConnection`.
        """
        self.db = db
        self.table = table
        self._source = connection
        self._lock = threading.Lock()
        self._conn: duckdb.DuckDBPyConnection | None = None
        self._subscribers: set[asyncio.Queue[Change | None]] = set()

    @property
    def qualified_table(self) -> str:
        return f'"{self.db}"."{self.table}"'

    async def connect(self) -> None:
        source = self._source
        if source is None:
            conn = await asyncio.to_thread(duckdb.connect, DEFAULT_DATABASE)
        elif callable(source):
            conn = source()
            if inspect.isawaitable(conn):
                conn = await conn
        elif isinstance(source, Mapping):
            params = dict(source)
            params.setdefault("database", DEFAULT_DATABASE)
            conn = await asyncio.to_thread(duckdb.connect, **params)
        else:
            raise ValueError(f"Unsupported DuckDB connection source: {type(source).__name__}")
        self._conn = conn

    def _require_conn(self) -> duckdb.DuckDBPyConnection:
        if self._conn is None:
            raise duckdb.ConnectionException("DuckDB store is not connected")
        return self._conn

    def _execute(self, sql: str) -> None:
        with self._lock:
            self._require_conn().execute(sql)

    def _fetch(self, sql: str, params: list[Any]) -> tuple[list[str], list[tuple[Any, ...]]]:
        with self._lock:
            result = self._require_conn().execute(sql, params)
            rows = result.fetchall()
            columns = [column[0] for column in result.description]
        return columns, rows

    async def create_database(self) -> None:
        await asyncio.to_thread(self._execute, f'CREATE SCHEMA "{self.db}"')

    async def create_table(self) -> None:
        create_sql = f"""
        CREATE TABLE {self.qualified_table} (
          id VARCHAR PRIMARY KEY,
          level VARCHAR NOT NULL,
          message VARCHAR NOT NULL,
          meta VARCHAR,
          "timestamp" TIMESTAMPTZ NOT NULL,
          hostname VARCHAR,
          label VARCHAR
        )
        """
        await asyncio.to_thread(self._execute, create_sql)

    async def create_index(self, field: str) -> None:
        await asyncio.to_thread(
            self._execute,
            f'CREATE INDEX "{self.table}_{field}_idx" ON {self.qualified_table} ("{field}")',
        )

    async def wait_index(self, field: str) -> None:
        """No-op: DuckDB builds indexes synchronously in `CREATE INDEX`."""

    def is_existence_conflict(self, exc: BaseException) -> bool:
        return isinstance(exc, duckdb.CatalogException) and "already exists" in str(exc)

    async def insert(self, entry: LogEntry) -> dict[str, Any]:
        """Insert a single record; `id` and `timestamp` are generated by DuckDB.

        Note: `meta` is stored as stable JSON text.
        """
        doc = entry.to_document()
        meta = doc.get("meta")
        meta_json = None if meta is None else json.dumps(meta, separators=(",", ":"), default=str)
        insert_sql = f"""
        INSERT INTO {self.qualified_table}
        (id, level, message, meta, "timestamp", hostname, label)
        VALUES (CAST(gen_random_uuid() AS VARCHAR), ?, ?, ?, current_timestamp, ?, ?)
        RETURNING {_RETURNING}
        """
        columns, rows = await asyncio.to_thread(
            self._fetch,
            insert_sql,
            [doc["level"], doc["message"], meta_json, doc.get("hostname"), doc.get("label")],
        )
        record = _decode_row(columns, rows[0])
        self._publish({"old_val": None, "new_val": record})
        return record

    async def query(self, options: QueryOptions) -> list[dict[str, Any]]:
        direction = "DESC" if options.order == "desc" else "ASC"
        select_sql = f"""
        SELECT {", ".join(_column_sql(name) for name in options.fields)}
        FROM {self.qualified_table}
        WHERE epoch_us("timestamp") >= ? AND epoch_us("timestamp") < ?
        ORDER BY "timestamp" {direction}
        LIMIT ? OFFSET ?
        """
        columns, rows = await asyncio.to_thread(
            self._fetch,
            select_sql,
            [to_epoch_us(options.from_), to_epoch_us(options.until), options.rows, options.start],
        )
        return [_decode_row(columns, row) for row in rows]

    async def changes(self) -> _DuckDBChangeFeed:
        self._require_conn()
        queue: asyncio.Queue[Change | None] = asyncio.Queue()
        self._subscribers.add(queue)
        return _DuckDBChangeFeed(self, queue)

    def _publish(self, change: Change) -> None:
        for queue in list(self._subscribers):
            queue.put_nowait(change)

    def _unsubscribe(self, queue: asyncio.Queue[Change | None]) -> None:
        self._subscribers.discard(queue)

    async def close(self) -> None:
        """End open feeds and close the DuckDB connection."""
        for queue in list(self._subscribers):
            self._unsubscribe(queue)
            queue.put_nowait(None)
        conn, self._conn = self._conn, None
        if conn is None:
            return

        def _close() -> None:
            with self._lock:
                conn.close()

        await asyncio.to_thread(_close)
        logger.debug("Closed DuckDB connection for %s", self.qualified_table)
