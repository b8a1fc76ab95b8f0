"""Bucket summaries and completion-triggered warehouse transfer."""

from repo_cron.transfer.service import TransferSummary, run_transfer, transfer_job_group
from repo_cron.transfer.summary import BucketSummaryError, JobGroup, is_completed, summarize_bucket
from repo_cron.transfer.warehouse import Warehouse, WarehouseLoadError
from repo_cron.transfer.webhook import WebhookNotifier

__all__ = [
    "BucketSummaryError",
    "JobGroup",
    "TransferSummary",
    "Warehouse",
    "WarehouseLoadError",
    "WebhookNotifier",
    "is_completed",
    "run_transfer",
    "summarize_bucket",
    "transfer_job_group",
]
