"""Lazy, validating iterators over repository list sources."""

from __future__ import annotations

import csv
import re
from collections.abc import Iterable, Iterator
from typing import Protocol, TextIO
from urllib.parse import urlparse

from repo_cron.data.models import HEAD_SHA, RepositoryDescriptor

GITHUB_HOST = "github.com"
GITLAB_HOST = "gitlab.com"
SUPPORTED_HOSTS = (GITHUB_HOST, GITLAB_HOST)

_HOSTNAME_RE = re.compile(r"^[a-z0-9-]+(\.[a-z0-9-]+)+$")

REPO_COLUMN = "repo"
METADATA_COLUMN = "metadata"


class RepoURLError(ValueError):
    """Base class for rejected repository URLs."""


class UnsupportedHostError(RepoURLError):
    """URL is well-formed but points to a host we cannot analyze."""


class InvalidRepoURLError(RepoURLError):
    """URL is structurally invalid."""


class MalformedRowError(ValueError):
    """Input row does not match the header layout."""


class RepoIterator(Protocol):
    """Pull-based, single-pass sequence of repository descriptors."""

    def has_next(self) -> bool: ...

    def next(self) -> RepositoryDescriptor: ...


def parse_repo_url(raw: str) -> str:
    """Validate a repository URL and return its canonical ``host/owner/name`` form."""

    value = raw.strip()
    if not value:
        raise InvalidRepoURLError("empty repository URL")
    if "://" not in value:
        value = f"https://{value}"
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"}:
        raise InvalidRepoURLError(f"unsupported scheme in {raw!r}")
    host = (parsed.hostname or "").lower()
    if not host:
        raise InvalidRepoURLError(f"missing host in {raw!r}")
    try:
        parsed.port
    except ValueError as error:
        raise InvalidRepoURLError(f"invalid port in {raw!r}") from error
    if not _HOSTNAME_RE.match(host):
        raise InvalidRepoURLError(f"invalid host {host!r} in {raw!r}")
    if host.startswith("www."):
        host = host[len("www.") :]
    if host not in SUPPORTED_HOSTS:
        raise UnsupportedHostError(f"unsupported host {host!r} in {raw!r}")

    path = parsed.path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]
    parts = [part for part in path.split("/") if part]
    if len(parts) != len(path.split("/")) or len(parts) < 2:  # noqa: PLR2004
        raise InvalidRepoURLError(f"expected owner and repository name in {raw!r}")
    if host == GITHUB_HOST and len(parts) != 2:  # noqa: PLR2004
        raise InvalidRepoURLError(f"GitHub URL must be github.com/<owner>/<repo>: {raw!r}")
    return f"{host}/{'/'.join(parts)}"


class CsvRepoIterator:
    """Iterates ``repo,metadata`` CSV rows, skipping comments and blank rows.

    Errors raised by :meth:`next` apply to the current row only: the row is
    consumed before it is validated, so iteration can continue afterwards.
    """

    def __init__(self, stream: Iterable[str]) -> None:
        self._rows = csv.reader(_content_lines(stream))
        self._pending: list[str] | None = None
        self._exhausted = False
        self._columns: list[str] = []
        header = self._read_row()
        if header is None:
            self._exhausted = True
            return
        self._columns = [column.strip().lower() for column in header]
        if REPO_COLUMN not in self._columns:
            raise MalformedRowError(f"Input header must contain a {REPO_COLUMN!r} column.")

    def has_next(self) -> bool:
        if self._pending is not None:
            return True
        if self._exhausted:
            return False
        self._pending = self._read_row()
        if self._pending is None:
            self._exhausted = True
            return False
        return True

    def next(self) -> RepositoryDescriptor:
        if not self.has_next():
            raise StopIteration
        row = self._pending or []
        self._pending = None
        if len(row) != len(self._columns):
            raise MalformedRowError(
                f"expected {len(self._columns)} columns, got {len(row)}: {row!r}",
            )
        values = dict(zip(self._columns, row, strict=True))
        url = parse_repo_url(values[REPO_COLUMN])
        return RepositoryDescriptor(
            url=url,
            commit=HEAD_SHA,
            metadata=tuple(values.get(METADATA_COLUMN, "").split()),
        )

    def __iter__(self) -> Iterator[RepositoryDescriptor]:
        return self

    def __next__(self) -> RepositoryDescriptor:
        return self.next()

    def _read_row(self) -> list[str] | None:
        for row in self._rows:
            if not row or not row[0].strip():
                continue
            return row
        return None


class NestedIterator:
    """Chains iterators, exhausting each one before moving to the next."""

    def __init__(self, iterators: list[RepoIterator]) -> None:
        self._iterators = list(iterators)
        self._index = 0

    def has_next(self) -> bool:
        while self._index < len(self._iterators):
            if self._iterators[self._index].has_next():
                return True
            self._index += 1
        return False

    def next(self) -> RepositoryDescriptor:
        if not self.has_next():
            raise StopIteration
        return self._iterators[self._index].next()

    def __iter__(self) -> Iterator[RepositoryDescriptor]:
        return self

    def __next__(self) -> RepositoryDescriptor:
        return self.next()


def make_iterator_from(stream: TextIO | Iterable[str]) -> CsvRepoIterator:
    """Build an iterator over one CSV text source."""

    return CsvRepoIterator(stream)


def make_nested_iterator(iterators: list[RepoIterator]) -> NestedIterator:
    """Build one continuous iterator over several sources."""

    if not iterators:
        raise ValueError("At least one input iterator is required.")
    return NestedIterator(iterators)


def _content_lines(stream: Iterable[str]) -> Iterator[str]:
    for line in stream:
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        yield line
