"""Log record and query models.

Records are designed to be:
- Append-only: the store assigns `id` and `timestamp` at insert time.
- Self-describing: optional fields (`meta`, `hostname`, `label`) are omitted
  rather than stored as nulls.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# Every persisted field, in display order. Also the default query projection.
LOG_FIELDS: tuple[str, ...] = ("id", "level", "message", "meta", "timestamp", "hostname", "label")

# Fields a record may legitimately lack.
OPTIONAL_FIELDS: frozenset[str] = frozenset({"meta", "hostname", "label"})

EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

DEFAULT_ROWS = 10

SortOrder = Literal["asc", "desc"]


def utc_now() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(tz=timezone.utc)


def to_epoch_us(ts: datetime) -> int:
    """Microseconds since the Unix epoch for a timezone-aware datetime."""
    return (ts - EPOCH) // timedelta(microseconds=1)


def from_epoch_us(us: int) -> datetime:
    """Inverse of `to_epoch_us`."""
    return EPOCH + timedelta(microseconds=us)


class LogEntry(BaseModel):
    """The caller-supplied part of a log record, ready to hand to a store."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    level: str
    message: str
    meta: Any = None
    hostname: str | None = None
    label: str | None = None

    def to_document(self) -> dict[str, Any]:
        """Return the document to insert, without unset optional fields."""
        doc: dict[str, Any] = {"level": self.level, "message": self.message}
        for name in ("meta", "hostname", "label"):
            value = getattr(self, name)
            if value is not None:
                doc[name] = value
        return doc


class QueryOptions(BaseModel):
    """Normalized options for a range query over the `timestamp` index.

    The window is half-open: `from_ <= timestamp < until`.
    """

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    from_: datetime = Field(default=EPOCH, validation_alias=AliasChoices("from", "from_"))
    until: datetime = Field(default_factory=utc_now)
    order: SortOrder = "asc"
    start: int = Field(default=0, ge=0)
    rows: int = Field(default=DEFAULT_ROWS, ge=0, validation_alias=AliasChoices("rows", "limit"))
    fields: tuple[str, ...] = LOG_FIELDS

    @field_validator("from_", "until")
    def validate_aware(cls, v: datetime) -> datetime:
        """Treat naive datetimes as UTC so they compare with stored instants."""
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v

    @field_validator("order", mode="before")
    def validate_order(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("fields", mode="before")
    def validate_fields(cls, v: Any) -> Any:
        """Accept a single name or a sequence; `None` means every field."""
        if v is None:
            return LOG_FIELDS
        if isinstance(v, str):
            v = (v,)
        unknown = [name for name in v if name not in LOG_FIELDS]
        if unknown:
            raise ValueError(f"Unknown record fields: {unknown}. Known: {list(LOG_FIELDS)}")
        return tuple(v)


@dataclass(frozen=True)
class PendingCall:
    """A transport call buffered until bootstrap completes."""

    method: str
    args: tuple[Any, ...] = ()
    kwargs: dict[str, Any] = field(default_factory=dict)
