"""Structured log sink backed by a document table.

This package provides:
- A transport that buffers calls until its table is provisioned, then persists
  records, answers range queries and tails newly inserted records.
- Store backends for RethinkDB and DuckDB behind one protocol.
- A `logging.Handler` bridge so standard library loggers can write to it.
"""

from .cycle import decycle, retrocycle
from .errors import BootstrapError, LogSinkError, TransportClosedError
from .handler import LogSinkHandler
from .models import LOG_FIELDS, LogEntry, QueryOptions
from .stores import DuckDBLogStore, LogStore, RethinkDBLogStore, create_store
from .stream import LogStream
from .transport import LogSinkTransport

__all__ = [
    "BootstrapError",
    "DuckDBLogStore",
    "LOG_FIELDS",
    "LogEntry",
    "LogSinkError",
    "LogSinkHandler",
    "LogSinkTransport",
    "LogStore",
    "LogStream",
    "QueryOptions",
    "RethinkDBLogStore",
    "TransportClosedError",
    "create_store",
    "decycle",
    "retrocycle",
]
