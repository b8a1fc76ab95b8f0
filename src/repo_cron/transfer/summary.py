"""Reconstructs per-job shard progress from a result bucket listing."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from repo_cron.data.blob import (
    SHARD_FILENAME_PREFIX,
    SHARD_METADATA_FILENAME,
    TRANSFER_STATUS_FILENAME,
    BlobBucket,
    BlobKeyError,
    parse_blob_filename,
)
from repo_cron.data.models import ShardMetadata, WireFormatError


class BucketSummaryError(RuntimeError):
    """Bucket contains an object the summarizer cannot classify."""


@dataclass(slots=True)
class JobGroup:
    """Shard progress of one job."""

    job_time: datetime
    expected: int = 0
    created: int = 0
    transferred: bool = False
    raw_metadata: bytes = b""

    def is_completed(self, threshold: float) -> bool:
        return is_completed(self.expected, self.created, threshold)


def is_completed(expected: int, created: int, threshold: float) -> bool:
    """A job without metadata (``expected == 0``) is never complete."""

    return expected > 0 and float(created) / float(expected) >= threshold


def summarize_bucket(bucket: BlobBucket) -> dict[datetime, JobGroup]:
    """Group every object by job time and count shards, metadata and markers."""

    groups: dict[datetime, JobGroup] = {}
    for key in bucket.list_keys():
        try:
            job_time, name = parse_blob_filename(key)
        except BlobKeyError as error:
            raise BucketSummaryError(f"error parsing blob key: {error}") from error
        group = groups.get(job_time)
        if group is None:
            group = groups[job_time] = JobGroup(job_time=job_time)

        if name.startswith(SHARD_FILENAME_PREFIX):
            group.created += 1
        elif name == SHARD_METADATA_FILENAME:
            raw = bucket.read(key)
            try:
                group.expected = ShardMetadata.from_json(raw).num_shard
            except WireFormatError as error:
                raise BucketSummaryError(f"invalid shard metadata {key}: {error}") from error
            group.raw_metadata = raw
        elif name == TRANSFER_STATUS_FILENAME:
            group.transferred = True
        else:
            raise BucketSummaryError(f"found unrecognized file: {key}")
    return groups
