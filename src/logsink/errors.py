"""Exception types raised or reported by the log sink."""

from __future__ import annotations


class LogSinkError(Exception):
    """Base class for log sink failures."""


class BootstrapError(LogSinkError):
    """Provisioning the database, table or index failed; the transport is unusable."""


class TransportClosedError(LogSinkError):
    """An operation was attempted after `close()`."""
