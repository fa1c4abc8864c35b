"""Store protocol: the database operations a transport depends on."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

from ..models import LogEntry, QueryOptions

# A change event as delivered by a change feed: `{"old_val": ..., "new_val": ...}`.
# Fresh inserts have `old_val` set to None.
Change = dict[str, Any]


class ChangeFeed(Protocol):
    """A live subscription to table changes."""

    def __aiter__(self) -> AsyncIterator[Change]:
        """Iterate changes until the feed ends or is closed."""

    async def close(self) -> None:
        """Stop the subscription and end iteration."""


class LogStore(Protocol):
    """An asynchronous, document-shaped log table.

    Provisioning methods raise when the resource already exists; callers decide
    which failures to tolerate using `is_existence_conflict`.
    """

    db: str
    table: str

    async def connect(self) -> None:
        """Open the connection from the configured connection source."""

    async def create_database(self) -> None:
        """Create the database (or its local equivalent)."""

    async def create_table(self) -> None:
        """Create the log table."""

    async def create_index(self, field: str) -> None:
        """Create a secondary index on `field`."""

    async def wait_index(self, field: str) -> None:
        """Block until the index on `field` can serve queries."""

    def is_existence_conflict(self, exc: BaseException) -> bool:
        """Return True if `exc` only says that a resource already exists."""

    async def insert(self, entry: LogEntry) -> dict[str, Any]:
        """Insert one record, letting the store assign `id` and `timestamp`."""

    async def query(self, options: QueryOptions) -> list[dict[str, Any]]:
        """Run an ordered, windowed, paginated and projected read."""

    async def changes(self) -> ChangeFeed:
        """Open a change feed restricted to newly inserted records."""

    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
