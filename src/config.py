"""Configuration loading and validation.

This module is responsible for:

- Loading `.env` into the process environment (without overriding existing vars).
- Converting environment variables into a strongly-typed `TransportConfig`.
- Validating option values and the connection source shape up front, so a bad
  configuration fails at construction instead of inside the bootstrap task.
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from typing import Any, Literal, TypeVar

import dotenv
from pydantic import BaseModel, ConfigDict, Field, field_validator

_T = TypeVar("_T", int, float)

_NAME_RE = re.compile(r"^[A-Za-z0-9_]+$")

# Severity names understood by the logging bridge (lowercase, as stored).
LEVELS: dict[str, int] = {
    "critical": 50,
    "error": 40,
    "warn": 30,
    "warning": 30,
    "info": 20,
    "debug": 10,
    "notset": 0,
}

Backend = Literal["rethinkdb", "duckdb"]


def _get_env_bool(name: str, default: bool) -> bool:
    """Read a boolean env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    normalized = raw.strip().lower()
    if normalized in {"true", "1", "yes", "y", "on"}:
        return True
    if normalized in {"false", "0", "no", "n", "off"}:
        return False
    raise ValueError(f"{name} must be a boolean (true/false). Got: {raw!r}")


def _get_env_number(name: str, default: _T, cast: type[_T]) -> _T:
    """Read an int/float env var with a default."""
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be a {cast.__name__}. Got: {raw!r}") from exc


def _get_env_str(name: str) -> str | None:
    """Read an optional string env var (empty counts as unset)."""
    value = os.getenv(name, "").strip()
    return value or None


class TransportConfig(BaseModel):
    """Construction-time options for a `LogSinkTransport`."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    name: str = Field(default="rethinkdb", description="Transport instance identifier")
    level: str = Field(default="info", description="Minimum severity accepted by the logging bridge")
    label: str | None = Field(default=None, description="Static label added to every record")
    silent: bool = Field(default=False, description="Suppress actual saving of records")
    store_host: bool = Field(default=False, description="Add the local hostname to every record")
    db: str = Field(default="test", description="Database to save records to")
    table: str = Field(default="log", description="Table to save records to")
    backend: Backend = Field(default="rethinkdb", description="Storage backend")

    # None, a mapping of driver connection parameters, or a zero-argument
    # factory returning a live connection handle (or an awaitable of one).
    connection: Any = Field(default=None, description="Connection source")

    @field_validator("level")
    def validate_level(cls, v: str) -> str:
        """Normalize the level and reject unknown severities."""
        normalized = v.strip().lower()
        if normalized not in LEVELS:
            raise ValueError(f"level must be one of {sorted(LEVELS)}. Got: {v!r}")
        return normalized

    @field_validator("db", "table")
    def validate_identifier(cls, v: str) -> str:
        """Database and table names must be plain identifiers."""
        if not _NAME_RE.match(v):
            raise ValueError(f"Names may only contain letters, digits and underscores. Got: {v!r}")
        return v

    @field_validator("connection")
    def validate_connection(cls, v: Any) -> Any:
        """Accept only the connection source shapes the stores know how to open."""
        if v is None or callable(v):
            return v
        if isinstance(v, Mapping):
            return dict(v)
        raise ValueError(
            "connection must be a mapping of connection parameters or a callable "
            f"returning a connection handle. Got: {type(v).__name__}"
        )


def load_config() -> TransportConfig:
    """Load transport configuration from environment variables.

    Notes:
    - Calls `dotenv.load_dotenv()` so local `.env` values are visible to the process.
    - The connection mapping is built from `RETHINKDB_HOST`/`RETHINKDB_PORT` for the
      RethinkDB backend and from `DUCKDB_PATH` for the DuckDB backend; when none of
      them is set the store's defaults apply.
    """
    dotenv.load_dotenv()

    backend = (_get_env_str("LOGSINK_BACKEND") or "rethinkdb").lower()

    connection: dict[str, Any] | None = None
    if backend == "duckdb":
        path = _get_env_str("DUCKDB_PATH")
        if path is not None:
            connection = {"database": path}
    else:
        host = _get_env_str("RETHINKDB_HOST")
        if host is not None:
            connection = {
                "host": host,
                "port": _get_env_number("RETHINKDB_PORT", 28015, int),
            }
            password = _get_env_str("RETHINKDB_PASSWORD")
            if password is not None:
                connection["user"] = _get_env_str("RETHINKDB_USER") or "admin"
                connection["password"] = password

    return TransportConfig(
        name=_get_env_str("LOGSINK_NAME") or "rethinkdb",
        level=_get_env_str("LOGSINK_LEVEL") or "info",
        label=_get_env_str("LOGSINK_LABEL"),
        silent=_get_env_bool("LOGSINK_SILENT", False),
        store_host=_get_env_bool("LOGSINK_STORE_HOST", False),
        db=_get_env_str("LOGSINK_DB") or "test",
        table=_get_env_str("LOGSINK_TABLE") or "log",
        backend=backend,  # type: ignore[arg-type]
        connection=connection,
    )
