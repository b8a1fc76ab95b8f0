"""Single-message subscribers over the durable request queue.

Two interchangeable backends read the same ``queue_messages`` table:

- ``sqlite``: the low-level :mod:`sqlite3` client, claiming inside
  ``BEGIN IMMEDIATE`` transactions.
- ``sqlmodel``: the SQLModel/SQLAlchemy client, claiming with an optimistic
  conditional update.

Both hand out at most one message at a time and keep its lease alive with an
:class:`AckDeadlineExtender` until the caller acks or nacks it.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta
from typing import Protocol, runtime_checkable
from uuid import uuid4

from sqlalchemy import and_, or_
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from repo_cron.config import QueueSettings
from repo_cron.data.models import BatchRequest, WireFormatError
from repo_cron.pubsub.storage import (
    STATUS_ACKED,
    STATUS_AVAILABLE,
    STATUS_LEASED,
    QueueMessage,
    build_queue_engine,
    connect_sqlite_with_policy,
    parse_queue_url,
    to_db_datetime,
    to_db_text,
    utc_now,
)

logger = logging.getLogger(__name__)

STATUS_DEAD_LETTER = "dead_letter"
MIN_EXTENSION_INTERVAL_SECONDS = 0.01


class QueueTransportError(RuntimeError):
    """The queue could not be reached or queried."""


class Subscriber(Protocol):
    """Pull one request at a time and settle it with ack or nack."""

    def synchronous_pull(self) -> BatchRequest | None: ...

    def ack(self) -> None: ...

    def nack(self) -> None: ...

    def close(self) -> None: ...


@runtime_checkable
class Stoppable(Protocol):
    def stop(self) -> None: ...


class AckDeadlineExtender:
    """Background thread renewing the lease of one held message.

    The first renewal happens immediately, later ones every
    ``deadline - grace`` seconds. :meth:`stop` returns only after the thread
    has exited, so no renewal can run once it returns.
    """

    def __init__(
        self,
        extend: Callable[[], bool],
        *,
        deadline_seconds: float,
        grace_seconds: float,
        name: str = "ack-deadline-extender",
    ) -> None:
        self._extend = extend
        self.interval_seconds = max(
            deadline_seconds - grace_seconds,
            MIN_EXTENSION_INTERVAL_SECONDS,
        )
        self._stopped = threading.Event()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self.extensions = 0

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self._stopped.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join()

    @property
    def running(self) -> bool:
        return self._thread.is_alive()

    def _run(self) -> None:
        delay = 0.0
        while not self._stopped.wait(delay):
            try:
                still_held = self._extend()
            except Exception:  # noqa: BLE001
                logger.exception("Ack deadline extension failed; lease may expire")
                return
            if not still_held:
                logger.warning("Lease lost while extending ack deadline; stopping extension")
                return
            self.extensions += 1
            delay = self.interval_seconds


@dataclass(slots=True)
class _HeldMessage:
    message_id: str
    lease_token: str
    extender: AckDeadlineExtender


@dataclass(frozen=True, slots=True)
class _Claimed:
    message_id: str
    lease_token: str
    payload: bytes
    delivery_attempt: int


class _PullState:
    """Shared bookkeeping for the held message, the stop flag and the pull loop."""

    def __init__(self, settings: QueueSettings) -> None:
        self.settings = settings
        self.stop_requested = threading.Event()
        self.held: _HeldMessage | None = None

    def pull(
        self,
        *,
        claim: Callable[[], _Claimed | None],
        extend: Callable[[str, str], bool],
        dead_letter: Callable[[str, str], None],
        transport_errors: tuple[type[BaseException], ...],
    ) -> BatchRequest | None:
        if self.held is not None:
            raise RuntimeError("Previous message must be acked or nacked before pulling again.")
        while True:
            if self.stop_requested.is_set():
                return None
            try:
                claimed = claim()
            except transport_errors as error:
                raise QueueTransportError(f"Queue pull failed: {error}") from error
            if claimed is None:
                if self.stop_requested.wait(self.settings.pull_backoff_seconds):
                    return None
                continue
            try:
                request = BatchRequest.from_json(claimed.payload)
            except WireFormatError:
                logger.exception("Dead-lettering undecodable message %s", claimed.message_id)
                try:
                    dead_letter(claimed.message_id, claimed.lease_token)
                except transport_errors as error:
                    raise QueueTransportError(f"Queue dead-letter failed: {error}") from error
                continue

            extender = AckDeadlineExtender(
                lambda: extend(claimed.message_id, claimed.lease_token),
                deadline_seconds=self.settings.ack_deadline_seconds,
                grace_seconds=self.settings.ack_grace_seconds,
                name=f"extend-{claimed.message_id[:8]}",
            )
            self.held = _HeldMessage(
                message_id=claimed.message_id,
                lease_token=claimed.lease_token,
                extender=extender,
            )
            extender.start()
            logger.info(
                "Pulled message %s (shard=%d attempt=%d)",
                claimed.message_id,
                request.shard_num,
                claimed.delivery_attempt,
            )
            return request

    def release(self) -> _HeldMessage:
        """Stop the extender and hand back the held message."""

        held = self.held
        if held is None:
            raise RuntimeError("No message is currently held.")
        held.extender.stop()
        self.held = None
        return held


class SqliteSubscriber:
    """Subscriber using a raw :mod:`sqlite3` connection."""

    def __init__(
        self,
        *,
        connection: sqlite3.Connection,
        topic: str,
        settings: QueueSettings,
    ) -> None:
        self.topic = topic
        self._connection = connection
        self._lock = threading.Lock()
        self._state = _PullState(settings)

    def synchronous_pull(self) -> BatchRequest | None:
        return self._state.pull(
            claim=self._claim,
            extend=self._extend,
            dead_letter=self._dead_letter,
            transport_errors=(sqlite3.Error,),
        )

    def ack(self) -> None:
        held = self._state.release()
        now = to_db_text(utc_now())
        try:
            updated = self._execute(
                "UPDATE queue_messages SET status = ?, acked_at = ?, lease_token = NULL, "
                "lease_expires_at = NULL WHERE message_id = ? AND lease_token = ?",
                (STATUS_ACKED, now, held.message_id, held.lease_token),
            )
        except sqlite3.Error as error:
            raise QueueTransportError(f"Queue ack failed: {error}") from error
        if updated != 1:
            logger.warning("Ack for message %s arrived after its lease was lost", held.message_id)

    def nack(self) -> None:
        held = self._state.release()
        try:
            self._execute(
                "UPDATE queue_messages SET status = ?, lease_token = NULL, lease_expires_at = NULL "
                "WHERE message_id = ? AND lease_token = ?",
                (STATUS_AVAILABLE, held.message_id, held.lease_token),
            )
        except sqlite3.Error as error:
            raise QueueTransportError(f"Queue nack failed: {error}") from error

    def stop(self) -> None:
        self._state.stop_requested.set()

    def close(self) -> None:
        self.stop()
        try:
            if self._state.held is not None:
                self.nack()
        finally:
            with self._lock:
                self._connection.close()

    def _claim(self) -> _Claimed | None:
        now = utc_now()
        token = str(uuid4())
        expires = now + timedelta(seconds=self._state.settings.ack_deadline_seconds)
        with self._lock:
            cursor = self._connection.cursor()
            try:
                cursor.execute("BEGIN IMMEDIATE")
                row = cursor.execute(
                    "SELECT message_id, payload, delivery_attempt FROM queue_messages "
                    "WHERE topic = ? AND (status = ? OR (status = ? AND lease_expires_at < ?)) "
                    "ORDER BY published_at ASC, message_id ASC LIMIT 1",
                    (self.topic, STATUS_AVAILABLE, STATUS_LEASED, to_db_text(now)),
                ).fetchone()
                if row is None:
                    cursor.execute("COMMIT")
                    return None
                cursor.execute(
                    "UPDATE queue_messages SET status = ?, lease_token = ?, lease_expires_at = ?, "
                    "delivery_attempt = delivery_attempt + 1 WHERE message_id = ?",
                    (STATUS_LEASED, token, to_db_text(expires), row["message_id"]),
                )
                cursor.execute("COMMIT")
            except sqlite3.Error:
                if self._connection.in_transaction:
                    cursor.execute("ROLLBACK")
                raise
            finally:
                cursor.close()
        return _Claimed(
            message_id=row["message_id"],
            lease_token=token,
            payload=bytes(row["payload"]),
            delivery_attempt=int(row["delivery_attempt"]) + 1,
        )

    def _extend(self, message_id: str, lease_token: str) -> bool:
        expires = utc_now() + timedelta(seconds=self._state.settings.ack_deadline_seconds)
        updated = self._execute(
            "UPDATE queue_messages SET lease_expires_at = ? "
            "WHERE message_id = ? AND lease_token = ? AND status = ?",
            (to_db_text(expires), message_id, lease_token, STATUS_LEASED),
        )
        return updated == 1

    def _dead_letter(self, message_id: str, lease_token: str) -> None:
        self._execute(
            "UPDATE queue_messages SET status = ?, lease_token = NULL, lease_expires_at = NULL "
            "WHERE message_id = ? AND lease_token = ?",
            (STATUS_DEAD_LETTER, message_id, lease_token),
        )

    def _execute(self, sql: str, params: tuple[object, ...]) -> int:
        with self._lock:
            cursor = self._connection.execute(sql, params)
            try:
                return cursor.rowcount
            finally:
                cursor.close()


class SqlModelSubscriber:
    """Subscriber using SQLModel sessions."""

    def __init__(self, *, engine: Engine, topic: str, settings: QueueSettings) -> None:
        self.topic = topic
        self.engine = engine
        self._state = _PullState(settings)

    def synchronous_pull(self) -> BatchRequest | None:
        return self._state.pull(
            claim=self._claim,
            extend=self._extend,
            dead_letter=self._dead_letter,
            transport_errors=(SQLAlchemyError,),
        )

    def ack(self) -> None:
        held = self._state.release()
        updated = self._settle(
            held.message_id,
            held.lease_token,
            status=STATUS_ACKED,
            acked_at=to_db_datetime(utc_now()),
        )
        if not updated:
            logger.warning("Ack for message %s arrived after its lease was lost", held.message_id)

    def nack(self) -> None:
        held = self._state.release()
        self._settle(held.message_id, held.lease_token, status=STATUS_AVAILABLE)

    def stop(self) -> None:
        self._state.stop_requested.set()

    def close(self) -> None:
        self.stop()
        try:
            if self._state.held is not None:
                self.nack()
        finally:
            self.engine.dispose()

    def _claim(self) -> _Claimed | None:
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(QueueMessage)
                    .where(
                        QueueMessage.topic == self.topic,
                        or_(
                            col(QueueMessage.status) == STATUS_AVAILABLE,
                            and_(
                                col(QueueMessage.status) == STATUS_LEASED,
                                col(QueueMessage.lease_expires_at) < to_db_datetime(now),
                            ),
                        ),
                    )
                    .order_by(
                        col(QueueMessage.published_at).asc(),
                        col(QueueMessage.message_id).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                token = str(uuid4())
                attempt = candidate.delivery_attempt + 1
                claimed = _Claimed(
                    message_id=candidate.message_id,
                    lease_token=token,
                    payload=bytes(candidate.payload),
                    delivery_attempt=attempt,
                )
                result = session.exec(
                    sa_update(QueueMessage)
                    .where(
                        col(QueueMessage.message_id) == candidate.message_id,
                        col(QueueMessage.status) == candidate.status,
                        col(QueueMessage.delivery_attempt) == candidate.delivery_attempt,
                    )
                    .values(
                        status=STATUS_LEASED,
                        lease_token=token,
                        lease_expires_at=to_db_datetime(
                            now + timedelta(seconds=self._state.settings.ack_deadline_seconds),
                        ),
                        delivery_attempt=attempt,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue
                session.commit()
                return claimed

    def _extend(self, message_id: str, lease_token: str) -> bool:
        expires = utc_now() + timedelta(seconds=self._state.settings.ack_deadline_seconds)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(QueueMessage)
                .where(
                    col(QueueMessage.message_id) == message_id,
                    col(QueueMessage.lease_token) == lease_token,
                    col(QueueMessage.status) == STATUS_LEASED,
                )
                .values(lease_expires_at=to_db_datetime(expires)),
            )
            session.commit()
            return result.rowcount == 1

    def _dead_letter(self, message_id: str, lease_token: str) -> None:
        self._settle(message_id, lease_token, status=STATUS_DEAD_LETTER)

    def _settle(
        self,
        message_id: str,
        lease_token: str,
        *,
        status: str,
        acked_at: object | None = None,
    ) -> bool:
        try:
            with Session(self.engine) as session:
                result = session.exec(
                    sa_update(QueueMessage)
                    .where(
                        col(QueueMessage.message_id) == message_id,
                        col(QueueMessage.lease_token) == lease_token,
                    )
                    .values(
                        status=status,
                        lease_token=None,
                        lease_expires_at=None,
                        acked_at=acked_at,
                    ),
                )
                session.commit()
                return result.rowcount == 1
        except SQLAlchemyError as error:
            raise QueueTransportError(f"Queue settle to {status!r} failed: {error}") from error


def create_subscriber(subscription_url: str, settings: QueueSettings) -> Subscriber:
    """Open the subscriber backend named by ``settings.subscriber_backend``."""

    location = parse_queue_url(subscription_url)
    # Creates the schema so both backends can start against a fresh database.
    engine = build_queue_engine(db_path=location.db_path, busy_timeout_ms=settings.busy_timeout_ms)
    backend = settings.subscriber_backend
    if backend == "sqlmodel":
        logger.info("Using sqlmodel subscriber for topic %s", location.topic)
        return SqlModelSubscriber(engine=engine, topic=location.topic, settings=settings)
    if backend == "sqlite":
        engine.dispose()
        logger.info("Using sqlite subscriber for topic %s", location.topic)
        connection = connect_sqlite_with_policy(
            db_path=location.db_path,
            busy_timeout_ms=settings.busy_timeout_ms,
        )
        return SqliteSubscriber(connection=connection, topic=location.topic, settings=settings)
    engine.dispose()
    raise ValueError(f"Unsupported subscriber backend: {backend!r}")
