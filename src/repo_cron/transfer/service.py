"""Completion-triggered transfer of finished jobs into the warehouse."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from repo_cron.data.blob import (
    SHARD_FILENAME_PREFIX,
    BlobBucket,
    get_blob_filename,
    get_transfer_status_filename,
)
from repo_cron.transfer.summary import JobGroup, summarize_bucket
from repo_cron.transfer.warehouse import ShardObject, Warehouse, WarehouseLoadError
from repo_cron.transfer.webhook import WebhookNotifier

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TransferSummary:
    """Aggregate counters of one transfer pass."""

    jobs: int = 0
    transferred: int = 0
    already_transferred: int = 0
    incomplete: int = 0
    failed: int = 0
    failures: list[str] = field(default_factory=list)


def select_transferable(
    groups: dict[datetime, JobGroup],
    *,
    threshold: float,
    summary: TransferSummary,
) -> list[JobGroup]:
    """Completed, not yet transferred groups, oldest first."""

    selected: list[JobGroup] = []
    for job_time in sorted(groups):
        group = groups[job_time]
        summary.jobs += 1
        if group.transferred:
            summary.already_transferred += 1
            continue
        if not group.is_completed(threshold):
            logger.info(
                "Job %s incomplete: created=%d expected=%d",
                job_time.isoformat(),
                group.created,
                group.expected,
            )
            summary.incomplete += 1
            continue
        selected.append(group)
    return selected


def transfer_job_group(
    group: JobGroup,
    *,
    bucket: BlobBucket,
    warehouse: Warehouse,
    notifier: WebhookNotifier | None = None,
) -> int:
    """Load one job's shards, then mark the job transferred and notify."""

    prefix = get_blob_filename("", group.job_time)
    try:
        shards = [
            ShardObject(name=key[len(prefix) :], content=bucket.read(key))
            for key in bucket.list_keys(prefix)
            if key[len(prefix) :].startswith(SHARD_FILENAME_PREFIX)
        ]
    except OSError as error:
        raise WarehouseLoadError(f"reading shards under {prefix} failed: {error}") from error
    rows = warehouse.load_partition(
        partition=group.job_time.date(),
        job_time=group.job_time,
        shards=shards,
    )
    # The marker is written only after a successful load.
    bucket.write(get_transfer_status_filename(group.job_time), b"")
    logger.info(
        "Transferred job %s: shards=%d rows=%d",
        group.job_time.isoformat(),
        len(shards),
        rows,
    )
    if notifier is not None:
        notifier.notify(group.raw_metadata)
    return rows


def run_transfer(
    *,
    bucket: BlobBucket,
    warehouse: Warehouse,
    threshold: float,
    notifier: WebhookNotifier | None = None,
) -> TransferSummary:
    """One stateless pass: summarize the bucket and transfer every eligible job.

    A failed load leaves no marker, so the next scheduled pass retries it.
    """

    summary = TransferSummary()
    groups = summarize_bucket(bucket)
    for group in select_transferable(groups, threshold=threshold, summary=summary):
        try:
            transfer_job_group(group, bucket=bucket, warehouse=warehouse, notifier=notifier)
        except WarehouseLoadError as error:
            logger.error("Transfer of job %s failed: %s", group.job_time.isoformat(), error)
            summary.failed += 1
            summary.failures.append(f"{group.job_time.isoformat()}: {error}")
            continue
        summary.transferred += 1
    return summary
