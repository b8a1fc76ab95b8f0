from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from repo_cron import controllers
from repo_cron.analysis import AnalysisResult, RepoUnreachableError
from repo_cron.data.blob import BlobBucket
from repo_cron.data.models import RepositoryDescriptor
from repo_cron.main import repo_cron

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Pipeline Commands"),
]


class FakeProbe:
    instances: list[FakeProbe] = []

    def __init__(self, *, timeout_seconds: float) -> None:
        self.timeout_seconds = timeout_seconds
        self.closed = False
        FakeProbe.instances.append(self)

    def __call__(self, repo: RepositoryDescriptor) -> AnalysisResult:
        if repo.url.endswith("/gone"):
            raise RepoUnreachableError("404")
        return AnalysisResult(result={"reachable": True}, raw={"status_code": 200})

    def close(self) -> None:
        self.closed = True


@pytest.fixture()
def pipeline_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    queue_url = f"sqlite:///{tmp_path / 'queue.db'}?topic=requests"
    monkeypatch.setenv("REPO_CRON_REQUEST_TOPIC_URL", queue_url)
    monkeypatch.setenv("REPO_CRON_REQUEST_SUBSCRIPTION_URL", queue_url)
    monkeypatch.setenv("REPO_CRON_DATA_BUCKET_URL", f"file://{tmp_path / 'results'}")
    monkeypatch.setenv("REPO_CRON_RAW_DATA_BUCKET_URL", str(tmp_path / "raw"))
    monkeypatch.setenv("REPO_CRON_WAREHOUSE_URL", f"sqlite:///{tmp_path / 'warehouse.db'}")
    monkeypatch.setenv("REPO_CRON_SHARD_SIZE", "2")
    monkeypatch.setenv("REPO_CRON_PULL_BACKOFF_SECONDS", "0.01")
    monkeypatch.setenv("REPO_CRON_PROBE_TIMEOUT_SECONDS", "5")
    monkeypatch.setenv("REPO_CRON_BUILD_VERSION", "test-build")
    FakeProbe.instances.clear()
    monkeypatch.setattr(controllers, "HttpProbe", FakeProbe)
    return tmp_path


def test_controller_worker_transfer_round_trip(pipeline_env: Path) -> None:
    repos = pipeline_env / "repos.csv"
    repos.write_text(
        "repo,metadata\n"
        "github.com/owner/one,critical\n"
        "github.com/owner/gone,\n"
        "gitlab.com/group/three,\n",
        "utf-8",
    )
    runner = CliRunner()

    published = runner.invoke(repo_cron, ["controller", str(repos)])
    assert published.exit_code == 0, published.output
    assert "shards=2 repos=3" in published.output

    results = BlobBucket(str(pipeline_env / "results"))
    metadata_key = next(key for key in results.list_keys() if key.endswith(".shard_metadata"))
    assert json.loads(results.read(metadata_key))["commitSha"] == "test-build"

    worked = runner.invoke(repo_cron, ["worker", "--max-messages", "2"])
    assert worked.exit_code == 0, worked.output
    assert "received=2 processed=2" in worked.output
    assert "analyzed=2 skipped=1" in worked.output
    assert FakeProbe.instances[0].timeout_seconds == 5
    assert FakeProbe.instances[0].closed is True

    transferred = runner.invoke(repo_cron, ["transfer"])
    assert transferred.exit_code == 0, transferred.output
    assert "jobs=1 transferred=1" in transferred.output
    assert results.exists(metadata_key.replace(".shard_metadata", ".transfer_complete"))

    raw_keys = BlobBucket(str(pipeline_env / "raw")).list_keys()
    assert len([key for key in raw_keys if "/shard-" in key]) == 2


def test_worker_once_processes_single_request(pipeline_env: Path) -> None:
    repos = pipeline_env / "repos.csv"
    repos.write_text("repo\ngithub.com/a/one\ngithub.com/a/two\ngithub.com/a/three\n", "utf-8")
    runner = CliRunner()
    assert runner.invoke(repo_cron, ["controller", str(repos)]).exit_code == 0

    result = runner.invoke(repo_cron, ["worker", "--once"])

    assert result.exit_code == 0, result.output
    assert "received=1 processed=1" in result.output


def test_controller_requires_configuration() -> None:
    result = CliRunner().invoke(repo_cron, ["controller"])

    assert result.exit_code != 0
    assert "REPO_CRON_REQUEST_TOPIC_URL is required" in result.output


def test_controller_without_inputs_needs_input_bucket(pipeline_env: Path) -> None:
    result = CliRunner().invoke(repo_cron, ["controller"])

    assert result.exit_code != 0
    assert "REPO_CRON_INPUT_BUCKET_URL" in result.output


def test_controller_reads_input_bucket(pipeline_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    inputs = BlobBucket(str(pipeline_env / "inputs"))
    inputs.write("lists/a.csv", b"repo\ngithub.com/a/one\n")
    inputs.write("lists/b.csv", b"repo\ngithub.com/a/two\ngithub.com/a/three\n")
    monkeypatch.setenv("REPO_CRON_INPUT_BUCKET_URL", inputs.url)
    monkeypatch.setenv("REPO_CRON_INPUT_BUCKET_PREFIX", "lists/")

    result = CliRunner().invoke(repo_cron, ["controller"])

    assert result.exit_code == 0, result.output
    assert "shards=2 repos=3" in result.output


def test_controller_aborts_on_bad_input_row(pipeline_env: Path) -> None:
    repos = pipeline_env / "repos.csv"
    repos.write_text("repo\ngithub.com/a/one\nbitbucket.org/a/two\n", "utf-8")

    result = CliRunner().invoke(repo_cron, ["controller", str(repos)])

    assert result.exit_code != 0
    assert "unsupported host" in result.output
    results = BlobBucket(str(pipeline_env / "results"))
    assert [key for key in results.list_keys() if key.endswith(".shard_metadata")] == []


def test_transfer_exits_non_zero_when_a_job_fails(pipeline_env: Path) -> None:
    results = BlobBucket(str(pipeline_env / "results"))
    results.write("2024.03.05/070809/.shard_metadata", b'{"numShard": 1}')
    results.write("2024.03.05/070809/shard-0000000", b"{broken\n")

    result = CliRunner().invoke(repo_cron, ["transfer"])

    assert result.exit_code != 0
    assert "failed=1" in result.output
    assert "Transfer failed for one or more jobs" in result.output


def test_add_repos_merges_into_sorted_list(tmp_path: Path) -> None:
    repo_list = tmp_path / "projects.csv"
    repo_list.write_text("repo,metadata\ngithub.com/z/last,\ngithub.com/a/first,x\n", "utf-8")
    additions = tmp_path / "new.csv"
    additions.write_text(
        "repo,metadata\nhttps://github.com/a/first.git,y\ngithub.com/m/mid,\n",
        "utf-8",
    )

    result = CliRunner().invoke(repo_cron, ["add-repos", str(repo_list), str(additions)])

    assert result.exit_code == 0, result.output
    assert "total=3 added=1" in result.output
    assert repo_list.read_text("utf-8") == (
        "repo,metadata\ngithub.com/a/first,x y\ngithub.com/m/mid,\ngithub.com/z/last,\n"
    )
