"""Runs the analysis callback over every repository of a shard."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any

from repo_cron.analysis import AnalysisRuntimeError, Analyzer, RepoUnreachableError
from repo_cron.data.blob import BlobBucket
from repo_cron.data.iterator import RepoURLError, parse_repo_url
from repo_cron.data.models import BatchRequest, RepositoryDescriptor
from repo_cron.worker.loop import result_filename

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ShardStats:
    """Counters buffered between post-process flushes."""

    shards: int = 0
    analyzed: int = 0
    skipped: int = 0
    runtime_errors: int = 0


class ShardWorker:
    """Analyzes a shard and writes its raw and primary result objects."""

    def __init__(
        self,
        *,
        analyzer: Analyzer,
        raw_bucket: BlobBucket | None = None,
        ignore_runtime_errors: bool = False,
    ) -> None:
        self.analyzer = analyzer
        self.raw_bucket = raw_bucket
        self.ignore_runtime_errors = ignore_runtime_errors
        self.stats = ShardStats()
        self.totals = ShardStats()

    def process(self, request: BatchRequest, result_bucket: BlobBucket) -> None:
        key = result_filename(request)
        date = request.job_time.date().isoformat()
        lines: list[str] = []
        raw_lines: list[str] = []
        shard_stats = ShardStats(shards=1)

        for repo in request.repos:
            logger.info("Running analysis for repo: %s", repo.url)
            try:
                parse_repo_url(repo.url)
            except RepoURLError as error:
                logger.info("Skipping repo with unsupported URL %s: %s", repo.url, error)
                shard_stats.skipped += 1
                continue
            try:
                outcome = self.analyzer(repo)
            except RepoUnreachableError as error:
                logger.info("Skipping unreachable repo %s: %s", repo.url, error)
                shard_stats.skipped += 1
                continue
            except AnalysisRuntimeError as error:
                shard_stats.runtime_errors += 1
                if not self.ignore_runtime_errors:
                    raise
                logger.warning("Ignoring runtime error for %s: %s", repo.url, error)
                continue

            header = _record_header(repo, date=date, shard_num=request.shard_num)
            lines.append(_dumps({**header, "result": outcome.result}))
            raw_lines.append(_dumps({**header, "raw": outcome.raw}))
            shard_stats.analyzed += 1

        if self.raw_bucket is not None:
            self.raw_bucket.write(key, _join(raw_lines))
        # Primary object last: its presence marks the shard as done.
        result_bucket.write(key, _join(lines))
        _merge(self.stats, shard_stats)
        logger.info("Write to shard file successful: %s", key)

    def post_process(self) -> None:
        """Flush buffered counters to the log."""

        stats = self.stats
        logger.info(
            "Shard stats: shards=%d analyzed=%d skipped=%d runtime_errors=%d",
            stats.shards,
            stats.analyzed,
            stats.skipped,
            stats.runtime_errors,
        )
        _merge(self.totals, stats)
        self.stats = ShardStats()


def _merge(target: ShardStats, source: ShardStats) -> None:
    target.shards += source.shards
    target.analyzed += source.analyzed
    target.skipped += source.skipped
    target.runtime_errors += source.runtime_errors


def _record_header(repo: RepositoryDescriptor, *, date: str, shard_num: int) -> dict[str, Any]:
    return {
        "date": date,
        "shard": shard_num,
        "repo": {"name": repo.url, "commit": repo.commit},
        "metadata": list(repo.metadata),
    }


def _dumps(payload: dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _join(lines: list[str]) -> bytes:
    return "".join(f"{line}\n" for line in lines).encode("utf-8")
