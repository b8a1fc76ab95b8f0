"""Prefect flow running the transfer pass with per-job tasks.

Same semantics as :func:`repo_cron.transfer.service.run_transfer`; each job's
load is a Prefect task so it gets retries and shows up in the Prefect UI.
"""

from __future__ import annotations

import logging
from contextlib import ExitStack

from prefect import flow, task

from repo_cron.data.blob import BlobBucket
from repo_cron.transfer.service import TransferSummary, select_transferable, transfer_job_group
from repo_cron.transfer.summary import JobGroup, summarize_bucket
from repo_cron.transfer.warehouse import Warehouse, WarehouseLoadError
from repo_cron.transfer.webhook import WebhookNotifier

logger = logging.getLogger(__name__)

_LOAD_RETRIES = 2
_LOAD_RETRY_DELAY = 30


@task(retries=_LOAD_RETRIES, retry_delay_seconds=_LOAD_RETRY_DELAY)
def transfer_job_task(
    *,
    group: JobGroup,
    bucket_url: str,
    warehouse_url: str,
    webhook_url: str = "",
    webhook_timeout_seconds: float = 30.0,
) -> int:
    """Load one job group; objects are built here so task inputs stay plain."""

    with ExitStack() as stack:
        warehouse = Warehouse(warehouse_url)
        stack.callback(warehouse.close)
        notifier = None
        if webhook_url:
            notifier = stack.enter_context(
                WebhookNotifier(webhook_url, timeout_seconds=webhook_timeout_seconds),
            )
        return transfer_job_group(
            group,
            bucket=BlobBucket(bucket_url),
            warehouse=warehouse,
            notifier=notifier,
        )


@flow(name="transfer_flow")
def transfer_flow(
    *,
    bucket_url: str,
    warehouse_url: str,
    threshold: float,
    webhook_url: str = "",
    webhook_timeout_seconds: float = 30.0,
) -> TransferSummary:
    summary = TransferSummary()
    groups = summarize_bucket(BlobBucket(bucket_url))
    for group in select_transferable(groups, threshold=threshold, summary=summary):
        try:
            transfer_job_task(
                group=group,
                bucket_url=bucket_url,
                warehouse_url=warehouse_url,
                webhook_url=webhook_url,
                webhook_timeout_seconds=webhook_timeout_seconds,
            )
        except WarehouseLoadError as error:
            logger.error("Transfer of job %s failed: %s", group.job_time.isoformat(), error)
            summary.failed += 1
            summary.failures.append(f"{group.job_time.isoformat()}: {error}")
            continue
        summary.transferred += 1
    return summary
