"""CLI entrypoint for repo-cron."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from repo_cron import __version__
from repo_cron.controllers import (
    AddReposCommand,
    ControllerCommand,
    CronCliController,
    TransferCommand,
    WorkerCommand,
)
from repo_cron.pubsub import PublishError, QueueTransportError
from repo_cron.transfer.summary import BucketSummaryError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CronCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

C = TypeVar("C")
R = TypeVar("R")


@click.group()
@click.version_option(version=__version__, prog_name="repo-cron")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level.",
)
def repo_cron(log_level: str) -> None:
    """Batch analysis of repository lists.

    Configuration comes from `REPO_CRON_*` environment variables.
    """

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@repo_cron.command("controller")
@click.argument(
    "input_files",
    nargs=-1,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def controller(input_files: tuple[Path, ...]) -> None:
    """Split repository lists into shards and publish them.

    Without INPUT_FILES the lists are read from `REPO_CRON_INPUT_BUCKET_URL`.
    """

    _emit_lines(_guard(CONTROLLER.run_controller, ControllerCommand(input_files=input_files)))


@repo_cron.command("worker")
@click.option(
    "--max-messages",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many requests.",
)
@click.option("--once", is_flag=True, default=False, help="Process a single request and exit.")
def worker(max_messages: int | None, once: bool) -> None:  # noqa: FBT001
    """Pull shard requests and analyze them until shutdown."""

    _emit_lines(
        _guard(
            CONTROLLER.run_worker,
            WorkerCommand(max_messages=1 if once else max_messages),
        ),
    )


@repo_cron.command("transfer")
@click.option(
    "--prefect",
    "use_prefect",
    is_flag=True,
    default=False,
    help="Run the transfer pass as a Prefect flow.",
)
def transfer(use_prefect: bool) -> None:  # noqa: FBT001
    """Load completed jobs into the warehouse."""

    result = _guard(CONTROLLER.run_transfer, TransferCommand(use_prefect=use_prefect))
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Transfer failed for one or more jobs.")


@repo_cron.command("add-repos")
@click.argument("repo_list", type=click.Path(dir_okay=False, path_type=Path))
@click.argument(
    "additions",
    nargs=-1,
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)
def add_repos(repo_list: Path, additions: tuple[Path, ...]) -> None:
    """Merge ADDITIONS into the REPO_LIST CSV, keeping it sorted and unique."""

    _emit_lines(
        _guard(
            CONTROLLER.add_repos,
            AddReposCommand(repo_list=repo_list, additions=additions),
        ),
    )


def _guard(action: Callable[[C], R], command: C) -> R:
    try:
        return action(command)
    except (ValueError, PublishError, QueueTransportError, BucketSummaryError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    repo_cron()
