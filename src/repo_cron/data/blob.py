"""Filesystem-backed object store and the job key layout."""

from __future__ import annotations

import os
import tempfile
from datetime import UTC, datetime
from pathlib import Path
from urllib.parse import unquote, urlparse

from repo_cron.data.models import normalize_job_time

# Lexicographic key order equals chronological order.
FILE_PREFIX_FORMAT = "%Y.%m.%d/%H%M%S/"
FILE_PREFIX_LENGTH = len("2006.01.02/150405/")

SHARD_METADATA_FILENAME = ".shard_metadata"
TRANSFER_STATUS_FILENAME = ".transfer_complete"
SHARD_FILENAME_PREFIX = "shard-"


class BlobKeyError(ValueError):
    """Object key does not follow the ``<date>/<time>/<name>`` layout."""


class BlobBucket:
    """Bucket of objects stored as files under a root directory.

    Accepts ``file:///abs/path`` URLs or plain paths. Writes go through a
    temporary file and an atomic rename, so readers never observe partial
    objects and rewriting a key is a safe overwrite.
    """

    def __init__(self, url: str) -> None:
        self.url = url.rstrip("/")
        self.root = bucket_root(url)

    def list_keys(self, prefix: str = "") -> list[str]:
        if not self.root.exists():
            return []
        keys: list[str] = []
        for path in self.root.rglob("*"):
            if not path.is_file() or path.name.startswith(".tmp-"):
                continue
            key = path.relative_to(self.root).as_posix()
            if key.startswith(prefix):
                keys.append(key)
        return sorted(keys)

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def read(self, key: str) -> bytes:
        return self._path(key).read_bytes()

    def write(self, key: str, data: bytes) -> None:
        target = self._path(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=".tmp-", dir=target.parent)
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
            Path(tmp_name).replace(target)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def location(self, key: str = "") -> str:
        """Full URL of a key (or of a key prefix)."""

        return f"{self.url}/{key}"

    def _path(self, key: str) -> Path:
        if not key or key.startswith("/") or ".." in Path(key).parts:
            raise BlobKeyError(f"Invalid object key: {key!r}")
        return self.root / key


def bucket_root(url: str) -> Path:
    """Resolve a bucket URL to its root directory."""

    parsed = urlparse(url)
    if parsed.scheme == "file":
        return Path(unquote(parsed.netloc + parsed.path))
    if parsed.scheme:
        raise ValueError(f"Unsupported bucket URL scheme: {url!r}")
    return Path(url)


def get_blob_filename(filename: str, job_time: datetime) -> str:
    """Key for ``filename`` inside the job's ``<date>/<time>/`` prefix."""

    return normalize_job_time(job_time).strftime(FILE_PREFIX_FORMAT) + filename


def get_shard_metadata_filename(job_time: datetime) -> str:
    return get_blob_filename(SHARD_METADATA_FILENAME, job_time)


def get_transfer_status_filename(job_time: datetime) -> str:
    return get_blob_filename(TRANSFER_STATUS_FILENAME, job_time)


def get_shard_filename(job_time: datetime, shard_num: int) -> str:
    """Deterministic result key of one shard."""

    return get_blob_filename(f"{SHARD_FILENAME_PREFIX}{shard_num:07d}", job_time)


def parse_blob_filename(key: str) -> tuple[datetime, str]:
    """Split a key into its job time and object name."""

    if len(key) < FILE_PREFIX_LENGTH:
        raise BlobKeyError(f"Object key shorter than expected: {key!r}")
    prefix, name = key[:FILE_PREFIX_LENGTH], key[FILE_PREFIX_LENGTH:]
    try:
        job_time = datetime.strptime(prefix, FILE_PREFIX_FORMAT).replace(tzinfo=UTC)
    except ValueError as error:
        raise BlobKeyError(f"Cannot parse job time from key {key!r}: {error}") from error
    return job_time, name
