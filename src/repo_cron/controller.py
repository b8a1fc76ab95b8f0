"""Shard publishing: split the repository list into batch requests."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Protocol

from repo_cron.data.blob import BlobBucket, get_blob_filename, get_shard_metadata_filename
from repo_cron.data.iterator import (
    CsvRepoIterator,
    NestedIterator,
    RepoIterator,
    make_iterator_from,
    make_nested_iterator,
)
from repo_cron.data.models import BatchRequest, RepositoryDescriptor, ShardMetadata
from repo_cron.pubsub import PublishError

logger = logging.getLogger(__name__)


class Publisher(Protocol):
    def publish(self, request: BatchRequest) -> None: ...

    def close(self) -> None: ...


@dataclass(frozen=True, slots=True)
class PublishSummary:
    """Outcome of one controller run."""

    job_time: datetime
    num_shards: int
    num_repos: int


def publish_shards(
    iterator: RepoIterator,
    publisher: Publisher,
    *,
    shard_size: int,
    job_time: datetime,
) -> tuple[int, int]:
    """Publish ``shard_size`` batches and return ``(last_shard_num, repo_count)``.

    An input of exactly ``k * shard_size`` repositories publishes ``k`` shards,
    so the returned shard number is ``-1`` for an empty input.
    """

    if shard_size <= 0:
        raise ValueError(f"shard_size must be positive, got {shard_size}")

    shard_num = 0
    repo_count = 0
    pending: list[RepositoryDescriptor] = []
    try:
        while iterator.has_next():
            pending.append(iterator.next())
            repo_count += 1
            if len(pending) < shard_size:
                continue
            publisher.publish(
                BatchRequest(job_time=job_time, shard_num=shard_num, repos=tuple(pending)),
            )
            pending = []
            shard_num += 1
    except Exception:
        # Drain in-flight sends; the input error is the one reported.
        try:
            publisher.close()
        except PublishError as close_error:
            logger.warning("Publisher close after aborted run failed: %s", close_error)
        raise

    if pending:
        publisher.publish(
            BatchRequest(job_time=job_time, shard_num=shard_num, repos=tuple(pending)),
        )
    else:
        # The counter already moved past the last full shard.
        shard_num -= 1

    publisher.close()
    logger.info("Published %d shard(s) with %d repo(s)", shard_num + 1, repo_count)
    return shard_num, repo_count


def write_shard_metadata(
    *,
    result_bucket: BlobBucket,
    raw_bucket: BlobBucket | None,
    job_time: datetime,
    last_shard_num: int,
    build_version: str,
) -> ShardMetadata:
    """Write ``.shard_metadata`` to the result bucket and mirror it to the raw bucket."""

    metadata = ShardMetadata(
        num_shard=last_shard_num + 1,
        shard_loc=result_bucket.location(get_blob_filename("", job_time)),
        commit_sha=build_version,
    )
    key = get_shard_metadata_filename(job_time)
    result_bucket.write(key, metadata.to_json())

    if raw_bucket is not None:
        raw_metadata = ShardMetadata(
            num_shard=metadata.num_shard,
            shard_loc=raw_bucket.location(get_blob_filename("", job_time)),
            commit_sha=metadata.commit_sha,
        )
        raw_bucket.write(key, raw_metadata.to_json())
    return metadata


def local_files(filenames: list[Path]) -> NestedIterator:
    """Iterate repository lists from local files in order."""

    iterators: list[RepoIterator] = []
    for filename in filenames:
        content = filename.read_text("utf-8")
        iterators.append(make_iterator_from(io.StringIO(content)))
    return make_nested_iterator(iterators)


def bucket_files(bucket: BlobBucket, prefix: str) -> NestedIterator:
    """Iterate repository lists from every object under ``prefix``."""

    keys = bucket.list_keys(prefix)
    if not keys:
        raise ValueError(f"No input files found under {bucket.location(prefix)}")
    iterators: list[RepoIterator] = []
    for key in keys:
        text = bucket.read(key).decode("utf-8")
        iterators.append(CsvRepoIterator(io.StringIO(text)))
    return make_nested_iterator(iterators)


def run_job(
    iterator: RepoIterator,
    publisher: Publisher,
    *,
    result_bucket: BlobBucket,
    raw_bucket: BlobBucket | None,
    shard_size: int,
    job_time: datetime,
    build_version: str,
) -> PublishSummary:
    """Publish every shard, then record the expected shard count for the job.

    Metadata is written only after the publisher flushed without errors.
    """

    last_shard_num, repo_count = publish_shards(
        iterator,
        publisher,
        shard_size=shard_size,
        job_time=job_time,
    )
    metadata = write_shard_metadata(
        result_bucket=result_bucket,
        raw_bucket=raw_bucket,
        job_time=job_time,
        last_shard_num=last_shard_num,
        build_version=build_version,
    )
    return PublishSummary(job_time=job_time, num_shards=metadata.num_shard, num_repos=repo_count)
