"""SQLite engine policy and timestamp helpers shared by the job queue."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine

# WAL lets workers lease jobs while the CLI reads the queue; job events
# reference their job row, so foreign keys must be enforced per connection.
QUEUE_PRAGMAS: tuple[str, ...] = (
    "PRAGMA journal_mode = WAL",
    "PRAGMA foreign_keys = ON",
)


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def to_iso(value: datetime) -> str:
    """Manifest timestamp: ISO-8601 in UTC with a trailing ``Z``."""

    aware = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return aware.astimezone(UTC).isoformat().replace("+00:00", "Z")


def from_iso(value: str) -> datetime:
    """Parse a manifest timestamp; naive values are taken as UTC."""

    text = value.strip()
    parsed = datetime.fromisoformat(f"{text[:-1]}+00:00" if text.endswith("Z") else text)
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def build_sqlite_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Engine for the queue database.

    Every worker thread opens its own connections (``NullPool``), and each
    connection waits up to ``busy_timeout_ms`` for the write lock.
    """

    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection: sqlite3.Connection, _record: object) -> None:
        cursor = dbapi_connection.cursor()
        try:
            for pragma in (*QUEUE_PRAGMAS, f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}"):
                cursor.execute(pragma)
        finally:
            cursor.close()

    return engine
