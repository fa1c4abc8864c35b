"""Bridge from Python's `logging` module into a `LogSinkTransport`."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from config import LEVELS

from .transport import LogSinkTransport

# Attributes every LogRecord carries; anything else came in through `extra=`.
_RESERVED_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {
    "message",
    "asctime",
    "taskName",
}

# Loggers whose records are never forwarded (the sink logs about itself).
_OWN_PREFIX = "logsink"

_DEFAULT_FORMATTER = logging.Formatter()


def _level_name(levelno: int) -> str:
    """Map a numeric logging level onto the lowercase names stored in records."""
    if levelno >= logging.CRITICAL:
        return "critical"
    if levelno >= logging.ERROR:
        return "error"
    if levelno >= logging.WARNING:
        return "warn"
    if levelno >= logging.INFO:
        return "info"
    return "debug"


class LogSinkHandler(logging.Handler):
    """Logging handler that forwards records to a transport.

    The handler level defaults to the transport's configured `level`. Fields
    passed via `extra=` become the record's `meta`, together with the logger
    name and any formatted exception text.
    """

    def __init__(
        self,
        transport: LogSinkTransport,
        *,
        level: int | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        super().__init__(level=LEVELS[transport.level] if level is None else level)
        self.transport = transport
        self._loop = loop or asyncio.get_running_loop()

    def _meta(self, record: logging.LogRecord) -> dict[str, Any]:
        meta = {key: value for key, value in vars(record).items() if key not in _RESERVED_ATTRS}
        meta["logger"] = record.name
        if record.exc_info:
            meta["exception"] = (self.formatter or _DEFAULT_FORMATTER).formatException(record.exc_info)
        return meta

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(_OWN_PREFIX):
            return
        try:
            args = (_level_name(record.levelno), record.getMessage(), self._meta(record))
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is self._loop:
                self.transport.log(*args)
            else:
                self._loop.call_soon_threadsafe(self.transport.log, *args)
        except Exception:
            self.handleError(record)
