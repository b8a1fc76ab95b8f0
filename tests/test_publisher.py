from __future__ import annotations

import sqlite3
from datetime import datetime
from pathlib import Path

import allure
import pytest

from repo_cron.data.models import BatchRequest, RepositoryDescriptor
from repo_cron.pubsub import PublishError, QueuePublisher, create_publisher
from repo_cron.pubsub.storage import parse_queue_url

pytestmark = [
    allure.epic("Messaging"),
    allure.feature("Publisher"),
]


def _request(job_time: datetime, shard_num: int) -> BatchRequest:
    return BatchRequest(
        job_time=job_time,
        shard_num=shard_num,
        repos=(RepositoryDescriptor(url=f"github.com/owner/repo-{shard_num}"),),
    )


def _stored_payloads(db_path: Path) -> list[BatchRequest]:
    with sqlite3.connect(db_path) as connection:
        rows = connection.execute(
            "SELECT payload, topic, status FROM queue_messages",
        ).fetchall()
    assert {(topic, status) for _, topic, status in rows} <= {("requests", "available")}
    return [BatchRequest.from_json(bytes(payload)) for payload, _, _ in rows]


def test_parse_queue_url_reads_path_and_topic(tmp_path: Path) -> None:
    location = parse_queue_url(f"sqlite:///{tmp_path}/q.db?topic=shards")

    assert location.db_path == tmp_path / "q.db"
    assert location.topic == "shards"
    assert parse_queue_url("sqlite:///relative.db").topic == "repo-requests"
    assert parse_queue_url("sqlite:///relative.db").db_path == Path("relative.db")


def test_parse_queue_url_rejects_other_schemes() -> None:
    with pytest.raises(ValueError, match="Unsupported queue URL scheme"):
        parse_queue_url("gcppubsub://projects/p/topics/t")


def test_publisher_persists_every_request(
    tmp_path: Path,
    queue_url: str,
    job_time: datetime,
) -> None:
    publisher = create_publisher(queue_url)

    for shard_num in range(3):
        publisher.publish(_request(job_time, shard_num))
    publisher.close()

    stored = _stored_payloads(tmp_path / "queue.db")
    assert sorted(request.shard_num for request in stored) == [0, 1, 2]
    assert {request.job_time for request in stored} == {job_time}
    assert publisher.failed_count == 0


def test_publisher_close_reports_failed_sends(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    queue_url: str,
    job_time: datetime,
) -> None:
    original_send = QueuePublisher._send

    def _flaky_send(self: QueuePublisher, payload: bytes) -> None:
        if BatchRequest.from_json(payload).shard_num == 1:
            raise sqlite3.OperationalError("database is locked")
        original_send(self, payload)

    monkeypatch.setattr(QueuePublisher, "_send", _flaky_send)
    publisher = create_publisher(queue_url)
    for shard_num in range(3):
        publisher.publish(_request(job_time, shard_num))

    with pytest.raises(PublishError, match="1 message") as error:
        publisher.close()

    assert error.value.failed_count == 1
    assert sorted(r.shard_num for r in _stored_payloads(tmp_path / "queue.db")) == [0, 2]


def test_publisher_rejects_publish_after_close(queue_url: str, job_time: datetime) -> None:
    publisher = create_publisher(queue_url)
    publisher.close()

    with pytest.raises(RuntimeError, match="closed"):
        publisher.publish(_request(job_time, 0))
