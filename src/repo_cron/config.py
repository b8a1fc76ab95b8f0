"""Runtime configuration for controller, worker and transfer jobs."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from urllib.parse import urlparse

from repo_cron import __version__

ENV_PREFIX = "REPO_CRON_"
SUBSCRIBER_BACKENDS = ("sqlite", "sqlmodel")
DEFAULT_ANALYZER = "repo_cron.analysis:probe_repository"


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Request queue settings."""

    topic_url: str = ""
    subscription_url: str = ""
    subscriber_backend: str = "sqlite"
    ack_deadline_seconds: float = 600.0
    ack_grace_seconds: float = 60.0
    pull_backoff_seconds: float = 30.0
    busy_timeout_ms: int = 5_000


@dataclass(frozen=True, slots=True)
class StorageSettings:
    """Object store locations."""

    result_bucket_url: str = ""
    raw_result_bucket_url: str = ""
    input_bucket_url: str = ""
    input_bucket_prefix: str = ""


@dataclass(frozen=True, slots=True)
class ControllerSettings:
    """Shard publishing settings."""

    shard_size: int = 10
    build_version: str = __version__


@dataclass(frozen=True, slots=True)
class WorkerSettings:
    """Worker loop settings."""

    ignore_runtime_errors: bool = False
    require_shard_metadata: bool = False
    analyzer: str = DEFAULT_ANALYZER
    probe_timeout_seconds: float = 30.0


@dataclass(frozen=True, slots=True)
class TransferSettings:
    """Completion detection and warehouse load settings."""

    completion_threshold: float = 0.99
    warehouse_url: str = ""
    webhook_url: str = ""
    webhook_timeout_seconds: float = 30.0


@dataclass(frozen=True, slots=True)
class Settings:
    """Application settings grouped by pipeline stage."""

    queue: QueueSettings = field(default_factory=QueueSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    controller: ControllerSettings = field(default_factory=ControllerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    transfer: TransferSettings = field(default_factory=TransferSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment with defaults for local development."""

        return cls(
            queue=QueueSettings(
                topic_url=_env_str("REQUEST_TOPIC_URL"),
                subscription_url=_env_str("REQUEST_SUBSCRIPTION_URL"),
                subscriber_backend=_env_str("SUBSCRIBER_BACKEND", "sqlite").lower(),
                ack_deadline_seconds=_env_float("ACK_DEADLINE_SECONDS", 600.0),
                ack_grace_seconds=_env_float("ACK_GRACE_SECONDS", 60.0),
                pull_backoff_seconds=_env_float("PULL_BACKOFF_SECONDS", 30.0),
                busy_timeout_ms=_env_int("BUSY_TIMEOUT_MS", 5_000),
            ),
            storage=StorageSettings(
                result_bucket_url=_env_str("DATA_BUCKET_URL"),
                raw_result_bucket_url=_env_str("RAW_DATA_BUCKET_URL"),
                input_bucket_url=_env_str("INPUT_BUCKET_URL"),
                input_bucket_prefix=_env_str("INPUT_BUCKET_PREFIX"),
            ),
            controller=ControllerSettings(
                shard_size=_env_int("SHARD_SIZE", 10),
                build_version=_env_str("BUILD_VERSION", __version__),
            ),
            worker=WorkerSettings(
                ignore_runtime_errors=_env_bool("IGNORE_RUNTIME_ERRORS", default=False),
                require_shard_metadata=_env_bool("REQUIRE_SHARD_METADATA", default=False),
                analyzer=_env_str("ANALYZER", DEFAULT_ANALYZER),
                probe_timeout_seconds=_env_float("PROBE_TIMEOUT_SECONDS", 30.0),
            ),
            transfer=TransferSettings(
                completion_threshold=_env_float("COMPLETION_THRESHOLD", 0.99),
                warehouse_url=_env_str("WAREHOUSE_URL"),
                webhook_url=_env_str("WEBHOOK_URL"),
                webhook_timeout_seconds=_env_float("WEBHOOK_TIMEOUT_SECONDS", 30.0),
            ),
        )

    def validate_for_controller(self) -> None:
        """Raise configuration error if the controller cannot run."""

        _require(self.queue.topic_url, "REQUEST_TOPIC_URL")
        _validate_queue_url(self.queue.topic_url, "REQUEST_TOPIC_URL")
        _require(self.storage.result_bucket_url, "DATA_BUCKET_URL")
        if self.controller.shard_size <= 0:
            raise ValueError(f"{ENV_PREFIX}SHARD_SIZE must be a positive integer.")

    def validate_for_worker(self) -> None:
        """Raise configuration error if the worker cannot run."""

        _require(self.queue.subscription_url, "REQUEST_SUBSCRIPTION_URL")
        _validate_queue_url(self.queue.subscription_url, "REQUEST_SUBSCRIPTION_URL")
        _require(self.storage.result_bucket_url, "DATA_BUCKET_URL")
        if self.queue.subscriber_backend not in SUBSCRIBER_BACKENDS:
            raise ValueError(
                f"Unsupported {ENV_PREFIX}SUBSCRIBER_BACKEND: "
                f"{self.queue.subscriber_backend!r}. Expected one of {SUBSCRIBER_BACKENDS}.",
            )
        if self.queue.ack_grace_seconds >= self.queue.ack_deadline_seconds:
            raise ValueError(
                f"{ENV_PREFIX}ACK_GRACE_SECONDS must be lower than "
                f"{ENV_PREFIX}ACK_DEADLINE_SECONDS.",
            )
        if self.queue.pull_backoff_seconds < 0:
            raise ValueError(f"{ENV_PREFIX}PULL_BACKOFF_SECONDS must be >= 0.")

    def validate_for_transfer(self) -> None:
        """Raise configuration error if the transfer pass cannot run."""

        _require(self.storage.result_bucket_url, "DATA_BUCKET_URL")
        _require(self.transfer.warehouse_url, "WAREHOUSE_URL")
        threshold = self.transfer.completion_threshold
        if not 0.0 < threshold <= 1.0:
            raise ValueError(
                f"{ENV_PREFIX}COMPLETION_THRESHOLD must be in (0, 1], got {threshold!r}.",
            )
        if self.transfer.webhook_url:
            parsed = urlparse(self.transfer.webhook_url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    f"Invalid webhook URL: {self.transfer.webhook_url!r}. "
                    "Expected an absolute URL with http:// or https:// scheme.",
                )


def _require(value: str, name: str) -> None:
    if not value:
        raise ValueError(f"{ENV_PREFIX}{name} is required.")


def _validate_queue_url(value: str, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme != "sqlite" or not parsed.path:
        raise ValueError(
            f"Invalid {ENV_PREFIX}{name}: {value!r}. "
            "Expected sqlite:///<path>?topic=<name>.",
        )


def _env_str(name: str, default: str = "") -> str:
    return os.getenv(f"{ENV_PREFIX}{name}", default).strip()


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(f"{ENV_PREFIX}{name}")
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError as error:
        raise ValueError(f"Invalid float value for {ENV_PREFIX}{name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(f"{ENV_PREFIX}{name}")
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off", ""}:
        return False
    raise ValueError(f"Invalid boolean value for {ENV_PREFIX}{name}: {value!r}")
