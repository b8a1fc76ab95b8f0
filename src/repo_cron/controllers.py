"""Controllers for repo-cron CLI commands."""

from __future__ import annotations

import io
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from repo_cron.analysis import Analyzer, HttpProbe, load_analyzer
from repo_cron.config import DEFAULT_ANALYZER, Settings
from repo_cron.controller import bucket_files, local_files, run_job
from repo_cron.data.blob import BlobBucket
from repo_cron.data.iterator import NestedIterator, make_iterator_from
from repo_cron.data.models import normalize_job_time
from repo_cron.data.repo_list import collect_repos, merge_repo_lists, write_repo_list
from repo_cron.pubsub import create_publisher, create_subscriber
from repo_cron.transfer.service import TransferSummary, run_transfer
from repo_cron.transfer.warehouse import Warehouse
from repo_cron.transfer.webhook import WebhookNotifier
from repo_cron.worker import ShardWorker, WorkLoop

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ControllerCommand:
    """CLI inputs for the shard publishing command."""

    input_files: tuple[Path, ...]


@dataclass(slots=True)
class WorkerCommand:
    """CLI inputs for the worker loop command."""

    max_messages: int | None


@dataclass(slots=True)
class TransferCommand:
    """CLI inputs for the transfer command."""

    use_prefect: bool


@dataclass(slots=True)
class AddReposCommand:
    """CLI inputs for repo list maintenance."""

    repo_list: Path
    additions: tuple[Path, ...]


@dataclass(slots=True)
class TransferResult:
    lines: list[str]
    success: bool


class CronCliController:
    """Coordinates controller, worker, transfer and repo list CLI operations."""

    def run_controller(self, command: ControllerCommand) -> list[str]:
        settings = Settings.from_env()
        settings.validate_for_controller()
        job_time = normalize_job_time(datetime.now(tz=UTC))
        iterator = _input_iterator(settings, command.input_files)

        raw_bucket = (
            BlobBucket(settings.storage.raw_result_bucket_url)
            if settings.storage.raw_result_bucket_url
            else None
        )
        publisher = create_publisher(
            settings.queue.topic_url,
            busy_timeout_ms=settings.queue.busy_timeout_ms,
        )
        summary = run_job(
            iterator,
            publisher,
            result_bucket=BlobBucket(settings.storage.result_bucket_url),
            raw_bucket=raw_bucket,
            shard_size=settings.controller.shard_size,
            job_time=job_time,
            build_version=settings.controller.build_version,
        )
        return [
            "Controller summary: "
            f"job_time={summary.job_time.isoformat()} shards={summary.num_shards} "
            f"repos={summary.num_repos}",
        ]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env()
        settings.validate_for_worker()
        raw_bucket = (
            BlobBucket(settings.storage.raw_result_bucket_url)
            if settings.storage.raw_result_bucket_url
            else None
        )
        with _analyzer(settings) as analyzer:
            worker = ShardWorker(
                analyzer=analyzer,
                raw_bucket=raw_bucket,
                ignore_runtime_errors=settings.worker.ignore_runtime_errors,
            )
            loop = WorkLoop(
                subscriber=create_subscriber(settings.queue.subscription_url, settings.queue),
                worker=worker,
                result_bucket=BlobBucket(settings.storage.result_bucket_url),
                require_shard_metadata=settings.worker.require_shard_metadata,
            )
            summary = loop.run(max_messages=command.max_messages)

        totals = worker.totals
        return [
            "Worker summary: "
            f"received={summary.received} processed={summary.processed} "
            f"skipped_existing={summary.skipped_existing} acked={summary.acked} "
            f"nacked={summary.nacked}",
            "Analysis summary: "
            f"analyzed={totals.analyzed} skipped={totals.skipped} "
            f"runtime_errors={totals.runtime_errors}",
        ]

    def run_transfer(self, command: TransferCommand) -> TransferResult:
        settings = Settings.from_env()
        settings.validate_for_transfer()
        if command.use_prefect:
            from repo_cron.transfer.flow import transfer_flow  # noqa: PLC0415

            summary = transfer_flow(
                bucket_url=settings.storage.result_bucket_url,
                warehouse_url=settings.transfer.warehouse_url,
                threshold=settings.transfer.completion_threshold,
                webhook_url=settings.transfer.webhook_url,
                webhook_timeout_seconds=settings.transfer.webhook_timeout_seconds,
            )
        else:
            summary = _run_plain_transfer(settings)

        lines = [
            "Transfer summary: "
            f"jobs={summary.jobs} transferred={summary.transferred} "
            f"already_transferred={summary.already_transferred} "
            f"incomplete={summary.incomplete} failed={summary.failed}",
        ]
        lines.extend(f"Failed: {failure}" for failure in summary.failures)
        return TransferResult(lines=lines, success=summary.failed == 0)

    def add_repos(self, command: AddReposCommand) -> list[str]:
        existing = []
        if command.repo_list.exists():
            existing = collect_repos(
                make_iterator_from(io.StringIO(command.repo_list.read_text("utf-8"))),
            )
        additions = collect_repos(local_files(list(command.additions)))
        merged = merge_repo_lists(existing, additions)

        buffer = io.StringIO()
        write_repo_list(merged, buffer)
        command.repo_list.write_text(buffer.getvalue(), "utf-8")
        return [
            f"Repo list updated: {command.repo_list}",
            f"Repos: total={len(merged)} added={len(merged) - len(existing)}",
        ]


def _input_iterator(settings: Settings, input_files: tuple[Path, ...]) -> NestedIterator:
    if input_files:
        return local_files(list(input_files))
    if not settings.storage.input_bucket_url:
        raise ValueError(
            "No input files given and REPO_CRON_INPUT_BUCKET_URL is not set.",
        )
    return bucket_files(
        BlobBucket(settings.storage.input_bucket_url),
        settings.storage.input_bucket_prefix,
    )


def _run_plain_transfer(settings: Settings) -> TransferSummary:
    warehouse = Warehouse(settings.transfer.warehouse_url)
    notifier = (
        WebhookNotifier(
            settings.transfer.webhook_url,
            timeout_seconds=settings.transfer.webhook_timeout_seconds,
        )
        if settings.transfer.webhook_url
        else None
    )
    try:
        return run_transfer(
            bucket=BlobBucket(settings.storage.result_bucket_url),
            warehouse=warehouse,
            threshold=settings.transfer.completion_threshold,
            notifier=notifier,
        )
    finally:
        if notifier is not None:
            notifier.close()
        warehouse.close()


@contextmanager
def _analyzer(settings: Settings) -> Iterator[Analyzer]:
    if settings.worker.analyzer != DEFAULT_ANALYZER:
        logger.info("Using analyzer %s", settings.worker.analyzer)
        yield load_analyzer(settings.worker.analyzer)
        return
    probe = HttpProbe(timeout_seconds=settings.worker.probe_timeout_seconds)
    try:
        yield probe
    finally:
        probe.close()
