"""SQLite storage shared by queue publishers and subscribers."""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import parse_qs, unquote, urlparse

from sqlalchemy import Column, DateTime, Index, LargeBinary, event
from sqlalchemy.engine import Engine
from sqlalchemy.pool import NullPool
from sqlmodel import Field, SQLModel, create_engine

DEFAULT_TOPIC = "repo-requests"

STATUS_AVAILABLE = "available"
STATUS_LEASED = "leased"
STATUS_ACKED = "acked"


class QueueMessage(SQLModel, table=True):
    __tablename__ = "queue_messages"  # type: ignore[bad-override]
    __table_args__ = (Index("ix_queue_messages_topic_status", "topic", "status"),)

    message_id: str = Field(primary_key=True)
    topic: str
    status: str = STATUS_AVAILABLE
    payload: bytes = Field(sa_column=Column(LargeBinary, nullable=False))
    delivery_attempt: int = 0
    lease_token: str | None = None
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )
    published_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    acked_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True), nullable=True),
    )


@dataclass(frozen=True, slots=True)
class QueueLocation:
    """Database file and topic name parsed from a queue URL."""

    db_path: Path
    topic: str


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def to_db_datetime(value: datetime) -> datetime:
    """Naive UTC value as stored by SQLite."""

    return value.astimezone(UTC).replace(tzinfo=None)


def to_db_text(value: datetime) -> str:
    """Naive UTC value in the text layout SQLAlchemy uses for SQLite DATETIME."""

    return to_db_datetime(value).strftime("%Y-%m-%d %H:%M:%S.%f")


def parse_queue_url(url: str) -> QueueLocation:
    """Parse ``sqlite:///<path>?topic=<name>``."""

    parsed = urlparse(url)
    if parsed.scheme != "sqlite":
        raise ValueError(f"Unsupported queue URL scheme: {url!r}")
    raw_path = unquote(parsed.netloc + parsed.path)
    # sqlite:///relative.db -> "/relative.db", sqlite:////abs.db -> "//abs.db"
    db_path = raw_path[1:] if raw_path.startswith("/") else raw_path
    if not db_path:
        raise ValueError(f"Queue URL must include a database path: {url!r}")
    topics = parse_qs(parsed.query).get("topic") or [DEFAULT_TOPIC]
    return QueueLocation(db_path=Path(db_path), topic=topics[0])


def build_queue_engine(*, db_path: Path, busy_timeout_ms: int) -> Engine:
    """Build SQLAlchemy engine with consistent SQLite policy and ensure the schema."""

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={
            "check_same_thread": False,
            "timeout": max(1.0, busy_timeout_ms / 1000.0),
        },
        poolclass=NullPool,
    )
    event.listen(
        engine,
        "connect",
        lambda dbapi_connection, _: apply_sqlite_pragmas(
            dbapi_connection,
            busy_timeout_ms=busy_timeout_ms,
        ),
    )
    SQLModel.metadata.create_all(engine, tables=[QueueMessage.__table__])  # type: ignore[list-item]
    return engine


def connect_sqlite_with_policy(*, db_path: Path, busy_timeout_ms: int) -> sqlite3.Connection:
    """Create sqlite3 connection with the same policy as the SQLAlchemy engine."""

    connection = sqlite3.connect(
        db_path,
        timeout=max(1.0, busy_timeout_ms / 1000.0),
        check_same_thread=False,
        isolation_level=None,
    )
    apply_sqlite_pragmas(connection, busy_timeout_ms=busy_timeout_ms)
    connection.row_factory = sqlite3.Row
    return connection


def apply_sqlite_pragmas(dbapi_connection: sqlite3.Connection, *, busy_timeout_ms: int) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode = WAL")
    cursor.execute(f"PRAGMA busy_timeout = {max(1, busy_timeout_ms)}")
    cursor.close()
