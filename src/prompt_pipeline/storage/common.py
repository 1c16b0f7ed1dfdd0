"""SQLite engine policy and timestamp helpers shared by storage code."""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import create_engine


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def utc_now_iso() -> str:
    """Current UTC time as ISO-8601 text, the format of every JSON record."""

    return utc_now().isoformat()


def to_naive_utc(value: datetime) -> datetime:
    """SQLite stores naive datetimes; normalize to UTC before dropping tzinfo."""

    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def to_aware_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def sqlite_engine(db_path: Path, *, busy_timeout_ms: int = 5000) -> Engine:
    """Engine for the batch database: no pooling, WAL journal, busy timeout.

    Batch workers run on threads, so connections are opened per session and
    SQLite's same-thread check is off.
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
            cursor.execute("PRAGMA journal_mode = WAL")
            cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
        finally:
            cursor.close()

    return engine
