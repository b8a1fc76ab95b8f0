"""Shared test fixtures."""

from __future__ import annotations

import os
from datetime import UTC, datetime
from pathlib import Path

import pytest

from repo_cron.config import ENV_PREFIX, QueueSettings
from repo_cron.data.blob import BlobBucket

JOB_TIME = datetime(2024, 3, 5, 7, 8, 9, tzinfo=UTC)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host REPO_CRON_* variables out of the tests."""

    for name in list(os.environ):
        if name.startswith(ENV_PREFIX):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def job_time() -> datetime:
    return JOB_TIME


@pytest.fixture()
def result_bucket(tmp_path: Path) -> BlobBucket:
    return BlobBucket(f"file://{tmp_path / 'results'}")


@pytest.fixture()
def raw_bucket(tmp_path: Path) -> BlobBucket:
    return BlobBucket(str(tmp_path / "raw-results"))


@pytest.fixture()
def queue_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'queue.db'}?topic=requests"


@pytest.fixture()
def queue_settings() -> QueueSettings:
    return QueueSettings(
        ack_deadline_seconds=5.0,
        ack_grace_seconds=1.0,
        pull_backoff_seconds=0.01,
        busy_timeout_ms=2_000,
    )
