"""Analysis callback contract and the built-in reachability probe."""

from __future__ import annotations

import importlib
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

import httpx

from repo_cron import __version__
from repo_cron.data.models import RepositoryDescriptor

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = f"repo-cron/{__version__}"
UNREACHABLE_STATUS_CODES = frozenset({401, 403, 404, 410, 451})


class RepoUnreachableError(RuntimeError):
    """Repository cannot be accessed; the shard skips it and continues."""


class AnalysisRuntimeError(RuntimeError):
    """Internal analysis bug; aborts the shard unless runtime errors are ignored."""


@dataclass(slots=True)
class AnalysisResult:
    """Output of analyzing one repository.

    ``result`` goes to the primary results object; ``raw`` to the raw one.
    """

    result: dict[str, Any]
    raw: dict[str, Any] = field(default_factory=dict)


Analyzer = Callable[[RepositoryDescriptor], AnalysisResult]


def load_analyzer(spec: str) -> Analyzer:
    """Resolve ``module:function`` to an analysis callback."""

    module_name, sep, attr = spec.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Analyzer must look like 'package.module:function', got {spec!r}")
    module = importlib.import_module(module_name)
    analyzer = getattr(module, attr, None)
    if not callable(analyzer):
        raise ValueError(f"Analyzer {spec!r} is not callable")
    return analyzer


class HttpProbe:
    """Checks that a repository page answers, as a minimal analysis."""

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
            transport=httpx.HTTPTransport(retries=2),
            follow_redirects=True,
        )

    def __call__(self, repo: RepositoryDescriptor) -> AnalysisResult:
        url = f"https://{repo.url}"
        try:
            response = self._client.head(url)
        except httpx.TimeoutException as error:
            raise RepoUnreachableError(f"timeout probing {url}") from error
        except httpx.HTTPError as error:
            raise AnalysisRuntimeError(f"HTTP error probing {url}: {error}") from error

        if response.status_code in UNREACHABLE_STATUS_CODES:
            raise RepoUnreachableError(f"{url} answered HTTP {response.status_code}")
        if response.status_code >= 500:  # noqa: PLR2004
            raise AnalysisRuntimeError(f"{url} answered HTTP {response.status_code}")
        return AnalysisResult(
            result={"reachable": response.is_success, "status_code": response.status_code},
            raw={
                "final_url": str(response.url),
                "status_code": response.status_code,
                "content_type": response.headers.get("content-type", ""),
            },
        )

    def close(self) -> None:
        self._client.close()


_default_probe: HttpProbe | None = None


def probe_repository(repo: RepositoryDescriptor) -> AnalysisResult:
    """Default analyzer: probe reachability with a shared HTTP client."""

    global _default_probe  # noqa: PLW0603
    if _default_probe is None:
        _default_probe = HttpProbe()
    return _default_probe(repo)
