"""Maintenance helpers for the repository list consumed by the controller."""

from __future__ import annotations

import csv
import logging
from typing import TextIO

from repo_cron.data.iterator import METADATA_COLUMN, REPO_COLUMN, RepoIterator
from repo_cron.data.models import RepositoryDescriptor

logger = logging.getLogger(__name__)


def collect_repos(iterator: RepoIterator) -> list[RepositoryDescriptor]:
    """Read every descriptor, merging duplicate URLs and their metadata tags.

    Order follows first occurrence; tags keep first-seen order without repeats.
    """

    merged: dict[str, list[str]] = {}
    while iterator.has_next():
        repo = iterator.next()
        tags = merged.setdefault(repo.url, [])
        for tag in repo.metadata:
            if tag not in tags:
                tags.append(tag)
    return [RepositoryDescriptor(url=url, metadata=tuple(tags)) for url, tags in merged.items()]


def merge_repo_lists(
    existing: list[RepositoryDescriptor],
    additions: list[RepositoryDescriptor],
) -> list[RepositoryDescriptor]:
    """Add new repositories to an existing list, sorted by URL."""

    merged: dict[str, list[str]] = {}
    for repo in [*existing, *additions]:
        tags = merged.setdefault(repo.url, [])
        for tag in repo.metadata:
            if tag not in tags:
                tags.append(tag)
    added = len(merged) - len({repo.url for repo in existing})
    logger.info("Repo list merge: existing=%d added=%d", len(existing), added)
    return [
        RepositoryDescriptor(url=url, metadata=tuple(tags)) for url, tags in sorted(merged.items())
    ]


def write_repo_list(repos: list[RepositoryDescriptor], stream: TextIO) -> None:
    """Write repositories as ``repo,metadata`` CSV."""

    writer = csv.writer(stream, lineterminator="\n")
    writer.writerow([REPO_COLUMN, METADATA_COLUMN])
    for repo in repos:
        writer.writerow([repo.url, " ".join(repo.metadata)])
