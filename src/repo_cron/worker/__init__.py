"""Shard worker loop and the default shard processor."""

from repo_cron.worker.loop import WorkLoop, WorkLoopSummary, Worker, result_filename
from repo_cron.worker.shard_worker import ShardWorker

__all__ = ["ShardWorker", "WorkLoop", "WorkLoopSummary", "Worker", "result_filename"]
