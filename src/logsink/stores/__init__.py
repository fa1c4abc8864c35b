"""Storage backends for the log sink."""

from __future__ import annotations

from config import TransportConfig

from .base import Change, ChangeFeed, LogStore
from .duckdb_store import DuckDBLogStore
from .rethinkdb_store import RethinkDBLogStore


def create_store(config: TransportConfig) -> LogStore:
    """Build the store selected by `config.backend`."""
    if config.backend == "duckdb":
        return DuckDBLogStore(db=config.db, table=config.table, connection=config.connection)
    return RethinkDBLogStore(db=config.db, table=config.table, connection=config.connection)


__all__ = [
    "Change",
    "ChangeFeed",
    "DuckDBLogStore",
    "LogStore",
    "RethinkDBLogStore",
    "create_store",
]
