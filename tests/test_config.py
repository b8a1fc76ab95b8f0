from __future__ import annotations

import allure
import pytest

from repo_cron.config import (
    DEFAULT_ANALYZER,
    ControllerSettings,
    QueueSettings,
    Settings,
    StorageSettings,
    TransferSettings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_uses_defaults_for_unset_variables() -> None:
    settings = Settings.from_env()

    assert settings.controller.shard_size == 10
    assert settings.queue.subscriber_backend == "sqlite"
    assert settings.queue.ack_deadline_seconds == 600.0
    assert settings.queue.ack_grace_seconds == 60.0
    assert settings.queue.pull_backoff_seconds == 30.0
    assert settings.transfer.completion_threshold == 0.99
    assert settings.worker.analyzer == DEFAULT_ANALYZER
    assert settings.worker.require_shard_metadata is False


def test_from_env_reads_prefixed_variables(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REPO_CRON_REQUEST_TOPIC_URL", "sqlite:///q.db?topic=a")
    monkeypatch.setenv("REPO_CRON_SUBSCRIBER_BACKEND", "SQLModel")
    monkeypatch.setenv("REPO_CRON_SHARD_SIZE", "25")
    monkeypatch.setenv("REPO_CRON_IGNORE_RUNTIME_ERRORS", "yes")
    monkeypatch.setenv("REPO_CRON_COMPLETION_THRESHOLD", "0.5")
    monkeypatch.setenv("REPO_CRON_BUILD_VERSION", "abc123")

    settings = Settings.from_env()

    assert settings.queue.topic_url == "sqlite:///q.db?topic=a"
    assert settings.queue.subscriber_backend == "sqlmodel"
    assert settings.controller.shard_size == 25
    assert settings.controller.build_version == "abc123"
    assert settings.worker.ignore_runtime_errors is True
    assert settings.transfer.completion_threshold == 0.5


def test_from_env_rejects_invalid_numbers_and_booleans(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("REPO_CRON_SHARD_SIZE", "many")
    with pytest.raises(ValueError, match="Invalid integer value for REPO_CRON_SHARD_SIZE"):
        Settings.from_env()

    monkeypatch.delenv("REPO_CRON_SHARD_SIZE")
    monkeypatch.setenv("REPO_CRON_REQUIRE_SHARD_METADATA", "maybe")
    with pytest.raises(ValueError, match="Invalid boolean value"):
        Settings.from_env()


def test_validate_for_controller_requires_topic_and_bucket() -> None:
    with pytest.raises(ValueError, match="REPO_CRON_REQUEST_TOPIC_URL is required"):
        Settings().validate_for_controller()

    settings = Settings(queue=QueueSettings(topic_url="sqlite:///q.db"))
    with pytest.raises(ValueError, match="REPO_CRON_DATA_BUCKET_URL is required"):
        settings.validate_for_controller()


def test_validate_for_controller_rejects_non_positive_shard_size() -> None:
    settings = Settings(
        queue=QueueSettings(topic_url="sqlite:///q.db"),
        storage=StorageSettings(result_bucket_url="/tmp/results"),
        controller=ControllerSettings(shard_size=0),
    )

    with pytest.raises(ValueError, match="SHARD_SIZE must be a positive integer"):
        settings.validate_for_controller()


def test_validate_for_controller_rejects_non_sqlite_topic() -> None:
    settings = Settings(
        queue=QueueSettings(topic_url="https://example.com/topic"),
        storage=StorageSettings(result_bucket_url="/tmp/results"),
    )

    with pytest.raises(ValueError, match="Invalid REPO_CRON_REQUEST_TOPIC_URL"):
        settings.validate_for_controller()


def test_validate_for_worker_rejects_unknown_backend_and_bad_grace() -> None:
    storage = StorageSettings(result_bucket_url="/tmp/results")
    settings = Settings(
        queue=QueueSettings(subscription_url="sqlite:///q.db", subscriber_backend="kafka"),
        storage=storage,
    )
    with pytest.raises(ValueError, match="Unsupported REPO_CRON_SUBSCRIBER_BACKEND"):
        settings.validate_for_worker()

    settings = Settings(
        queue=QueueSettings(
            subscription_url="sqlite:///q.db",
            ack_deadline_seconds=60.0,
            ack_grace_seconds=60.0,
        ),
        storage=storage,
    )
    with pytest.raises(ValueError, match="ACK_GRACE_SECONDS must be lower"):
        settings.validate_for_worker()


def test_validate_for_transfer_checks_threshold_and_webhook() -> None:
    storage = StorageSettings(result_bucket_url="/tmp/results")
    settings = Settings(
        storage=storage,
        transfer=TransferSettings(warehouse_url="sqlite:///wh.db", completion_threshold=1.5),
    )
    with pytest.raises(ValueError, match="COMPLETION_THRESHOLD must be in"):
        settings.validate_for_transfer()

    settings = Settings(
        storage=storage,
        transfer=TransferSettings(warehouse_url="sqlite:///wh.db", webhook_url="ftp://hook"),
    )
    with pytest.raises(ValueError, match="Invalid webhook URL"):
        settings.validate_for_transfer()

    Settings(
        storage=storage,
        transfer=TransferSettings(
            warehouse_url="sqlite:///wh.db",
            webhook_url="https://hooks.example.com/done",
        ),
    ).validate_for_transfer()
