"""Fire-and-forget publisher for shard requests."""

from __future__ import annotations

import logging
import threading
from uuid import uuid4

from sqlalchemy.engine import Engine
from sqlmodel import Session

from repo_cron.data.models import BatchRequest
from repo_cron.pubsub.storage import (
    STATUS_AVAILABLE,
    QueueMessage,
    build_queue_engine,
    parse_queue_url,
    to_db_datetime,
    utc_now,
)

logger = logging.getLogger(__name__)


class PublishError(RuntimeError):
    """One or more sends failed during the publisher's lifetime."""

    def __init__(self, failed_count: int) -> None:
        super().__init__(f"{failed_count} message(s) failed to publish")
        self.failed_count = failed_count


class QueuePublisher:
    """Publishes each request on its own thread; :meth:`close` joins them all.

    Send failures are counted, not attributed to a message, and reported once
    by :meth:`close`.
    """

    def __init__(self, *, engine: Engine, topic: str) -> None:
        self.engine = engine
        self.topic = topic
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._failed = 0
        self._published = 0
        self._closed = False

    def publish(self, request: BatchRequest) -> None:
        if self._closed:
            raise RuntimeError("Publisher is closed.")
        payload = request.to_json()
        thread = threading.Thread(
            target=self._send_and_count,
            args=(payload,),
            name=f"publish-shard-{request.shard_num}",
            daemon=True,
        )
        self._threads.append(thread)
        thread.start()

    def close(self) -> None:
        self._closed = True
        for thread in self._threads:
            thread.join()
        self._threads.clear()
        logger.info(
            "Publisher closed: topic=%s published=%d failed=%d",
            self.topic,
            self._published,
            self._failed,
        )
        if self._failed:
            raise PublishError(self._failed)

    @property
    def failed_count(self) -> int:
        return self._failed

    def _send_and_count(self, payload: bytes) -> None:
        try:
            self._send(payload)
        except Exception:  # noqa: BLE001
            logger.warning("Publish to topic %s failed", self.topic, exc_info=True)
            with self._lock:
                self._failed += 1
            return
        with self._lock:
            self._published += 1

    def _send(self, payload: bytes) -> None:
        with Session(self.engine) as session:
            session.add(
                QueueMessage(
                    message_id=str(uuid4()),
                    topic=self.topic,
                    status=STATUS_AVAILABLE,
                    payload=payload,
                    published_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()


def create_publisher(topic_url: str, *, busy_timeout_ms: int = 5_000) -> QueuePublisher:
    """Open a publisher for ``sqlite:///<path>?topic=<name>``."""

    location = parse_queue_url(topic_url)
    engine = build_queue_engine(db_path=location.db_path, busy_timeout_ms=busy_timeout_ms)
    return QueuePublisher(engine=engine, topic=location.topic)
