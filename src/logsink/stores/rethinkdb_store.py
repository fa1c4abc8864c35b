"""RethinkDB store using the official driver in asyncio mode."""

from __future__ import annotations

import inspect
import logging
from collections.abc import AsyncIterator, Mapping
from typing import Any

from rethinkdb import RethinkDB
from rethinkdb.errors import ReqlOpFailedError

from ..models import LogEntry, QueryOptions
from .base import Change

logger = logging.getLogger(__name__)

DEFAULT_CONNECTION: dict[str, Any] = {"host": "localhost", "port": 28015}


async def _collect(result: Any) -> list[dict[str, Any]]:
    """Drain a query result that may be a plain list or an asyncio cursor."""
    if isinstance(result, list):
        return result
    items: list[dict[str, Any]] = []
    while await result.fetch_next():
        items.append(await result.next())
    return items


class _RethinkDBChangeFeed:
    """Wraps a changefeed cursor as an async iterator of change documents."""

    def __init__(self, cursor: Any) -> None:
        self._cursor = cursor

    async def _iterate(self) -> AsyncIterator[Change]:
        while await self._cursor.fetch_next():
            yield await self._cursor.next()

    def __aiter__(self) -> AsyncIterator[Change]:
        return self._iterate()

    async def close(self) -> None:
        await self._cursor.close()


class RethinkDBLogStore:
    """RethinkDB-backed log table."""

    def __init__(self, *, db: str = "test", table: str = "log", connection: Any = None) -> None:
        """Create a store; nothing is opened until `connect()`.

        Args:
            db: Database holding the log table.
            table: Log table name.
            connection: None (driver defaults), a mapping of `r.connect` keyword
                arguments, or a callable returning a connection (or an awaitable
                resolving to one).
        """
        self.db = db
        self.table = table
        self._source = connection
        self.r = RethinkDB()
        self.r.set_loop_type("asyncio")
        self._conn: Any = None

    def _table(self) -> Any:
        return self.r.db(self.db).table(self.table)

    async def _run(self, query: Any, **optargs: Any) -> Any:
        if self._conn is None:
            raise ConnectionError("RethinkDB store is not connected")
        return await query.run(self._conn, **optargs)

    async def connect(self) -> None:
        source = self._source
        if source is None:
            conn = await self.r.connect(**DEFAULT_CONNECTION)
        elif callable(source):
            conn = source()
            if inspect.isawaitable(conn):
                conn = await conn
        elif isinstance(source, Mapping):
            conn = await self.r.connect(**dict(source))
        else:
            raise ValueError(f"Unsupported RethinkDB connection source: {type(source).__name__}")
        self._conn = conn

    async def create_database(self) -> None:
        await self._run(self.r.db_create(self.db))

    async def create_table(self) -> None:
        await self._run(self.r.db(self.db).table_create(self.table))

    async def create_index(self, field: str) -> None:
        await self._run(self._table().index_create(field))

    async def wait_index(self, field: str) -> None:
        await self._run(self._table().index_wait(field))

    def is_existence_conflict(self, exc: BaseException) -> bool:
        # Server messages: "Database `x` already exists.", "Table `x.y` already
        # exists.", "Index `z` already exists on table `x.y`."
        return isinstance(exc, ReqlOpFailedError) and "already exists" in str(exc)

    async def insert(self, entry: LogEntry) -> dict[str, Any]:
        doc = entry.to_document()
        doc["timestamp"] = self.r.now()
        result = await self._run(self._table().insert(doc, return_changes=True))
        if result.get("errors"):
            raise ReqlOpFailedError(result.get("first_error", "Insert failed"))
        return result["changes"][0]["new_val"]

    async def query(self, options: QueryOptions) -> list[dict[str, Any]]:
        index = self.r.desc("timestamp") if options.order == "desc" else self.r.asc("timestamp")
        query = (
            self._table()
            .between(options.from_, options.until, index="timestamp")
            .order_by(index=index)
            .skip(options.start)
            .limit(options.rows)
            .pluck(*options.fields)
        )
        return await _collect(await self._run(query))

    async def changes(self) -> _RethinkDBChangeFeed:
        cursor = await self._run(self._table().changes().filter(self.r.row["old_val"].eq(None)))
        return _RethinkDBChangeFeed(cursor)

    async def close(self) -> None:
        conn, self._conn = self._conn, None
        if conn is None:
            return
        await conn.close(noreply_wait=False)
        logger.debug("Closed RethinkDB connection for %s.%s", self.db, self.table)
