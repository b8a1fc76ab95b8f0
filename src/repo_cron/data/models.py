"""Batch request, shard metadata and their JSON wire encodings."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

HEAD_SHA = "HEAD"
WIRE_VERSION = 1


class WireFormatError(ValueError):
    """Raised when a message or metadata payload cannot be decoded."""


@dataclass(frozen=True, slots=True)
class RepositoryDescriptor:
    """One repository to analyze."""

    url: str
    commit: str = HEAD_SHA
    metadata: tuple[str, ...] = ()

    def to_wire(self) -> dict[str, Any]:
        return {"url": self.url, "commit": self.commit, "metadata": list(self.metadata)}

    @classmethod
    def from_wire(cls, payload: dict[str, Any]) -> RepositoryDescriptor:
        url = payload.get("url")
        if not isinstance(url, str) or not url:
            raise WireFormatError(f"Repository entry without url: {payload!r}")
        metadata = payload.get("metadata") or []
        if not isinstance(metadata, list):
            raise WireFormatError(f"Repository metadata must be a list: {payload!r}")
        return cls(
            url=url,
            commit=str(payload.get("commit") or HEAD_SHA),
            metadata=tuple(str(tag) for tag in metadata),
        )


@dataclass(frozen=True, slots=True)
class BatchRequest:
    """One shard of a job, as published to the request topic."""

    job_time: datetime
    shard_num: int
    repos: tuple[RepositoryDescriptor, ...] = ()

    def to_json(self) -> bytes:
        payload = {
            "version": WIRE_VERSION,
            "jobTimestamp": normalize_job_time(self.job_time).isoformat(),
            "shardNumber": self.shard_num,
            "repos": [repo.to_wire() for repo in self.repos],
        }
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes | str) -> BatchRequest:
        payload = _load_object(raw)
        version = payload.get("version", WIRE_VERSION)
        if version != WIRE_VERSION:
            raise WireFormatError(f"Unsupported batch request version: {version!r}")
        try:
            job_time = datetime.fromisoformat(str(payload["jobTimestamp"]))
            shard_num = int(payload["shardNumber"])
        except (KeyError, TypeError, ValueError) as error:
            raise WireFormatError(f"Invalid batch request header: {error}") from error
        if shard_num < 0:
            raise WireFormatError(f"Negative shard number: {shard_num}")
        repos = payload.get("repos") or []
        if not isinstance(repos, list):
            raise WireFormatError("Batch request repos must be a list.")
        return cls(
            job_time=normalize_job_time(job_time),
            shard_num=shard_num,
            repos=tuple(RepositoryDescriptor.from_wire(item) for item in repos),
        )


@dataclass(frozen=True, slots=True)
class ShardMetadata:
    """Per-job record of how many shards were published and where results go."""

    num_shard: int
    shard_loc: str
    commit_sha: str
    extra: dict[str, Any] = field(default_factory=dict)

    def to_json(self) -> bytes:
        payload = {
            "numShard": self.num_shard,
            "shardLoc": self.shard_loc,
            "commitSha": self.commit_sha,
            **self.extra,
        }
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    @classmethod
    def from_json(cls, raw: bytes | str) -> ShardMetadata:
        payload = _load_object(raw)
        try:
            num_shard = int(payload.pop("numShard"))
        except (KeyError, TypeError, ValueError) as error:
            raise WireFormatError(f"Invalid shard metadata: {error}") from error
        return cls(
            num_shard=num_shard,
            shard_loc=str(payload.pop("shardLoc", "")),
            commit_sha=str(payload.pop("commitSha", "")),
            extra=payload,
        )


def normalize_job_time(value: datetime) -> datetime:
    """Return UTC job time truncated to the second, the resolution of blob keys."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).replace(microsecond=0)


def _load_object(raw: bytes | str) -> dict[str, Any]:
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as error:
        raise WireFormatError(f"Payload is not valid JSON: {error}") from error
    if not isinstance(payload, dict):
        raise WireFormatError("Expected JSON object payload.")
    return payload
