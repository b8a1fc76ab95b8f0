"""Generic pull → check → process → ack loop shared by cron workers."""

from __future__ import annotations

import logging
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Protocol

from repo_cron.data.blob import BlobBucket, get_shard_filename, get_shard_metadata_filename
from repo_cron.data.models import BatchRequest
from repo_cron.pubsub.subscriber import Stoppable, Subscriber

logger = logging.getLogger(__name__)


class Worker(Protocol):
    """Processes one batch request.

    Raising from :meth:`process` nacks the request so the whole shard is
    retried. :meth:`post_process` runs only after the request was acked.
    """

    def process(self, request: BatchRequest, result_bucket: BlobBucket) -> None: ...

    def post_process(self) -> None: ...


@dataclass(slots=True)
class WorkLoopSummary:
    """Aggregate loop counters for CLI reporting."""

    received: int = 0
    processed: int = 0
    skipped_existing: int = 0
    acked: int = 0
    nacked: int = 0


def result_filename(request: BatchRequest) -> str:
    """Key of the shard's result object, used for duplicate detection and transfer."""

    return get_shard_filename(request.job_time, request.shard_num)


class WorkLoop:
    """Consumes requests one at a time until the subscriber signals shutdown."""

    def __init__(
        self,
        *,
        subscriber: Subscriber,
        worker: Worker,
        result_bucket: BlobBucket,
        require_shard_metadata: bool = False,
    ) -> None:
        self.subscriber = subscriber
        self.worker = worker
        self.result_bucket = result_bucket
        self.require_shard_metadata = require_shard_metadata
        self._stop_requested = False

    def run(self, *, max_messages: int | None = None) -> WorkLoopSummary:
        """Run until a ``None`` pull, ``max_messages`` or a pull transport error."""

        summary = WorkLoopSummary()
        try:
            with self._signal_handlers():
                while not self._stop_requested:
                    if max_messages is not None and summary.received >= max_messages:
                        break
                    request = self.subscriber.synchronous_pull()
                    if request is None:
                        logger.info("Subscription returned no message, exiting")
                        break
                    summary.received += 1
                    self._handle(request, summary)
        finally:
            self.subscriber.close()
        return summary

    def _handle(self, request: BatchRequest, summary: WorkLoopSummary) -> None:
        key = result_filename(request)
        try:
            if self.require_shard_metadata and not self.result_bucket.exists(
                get_shard_metadata_filename(request.job_time),
            ):
                # Results of a job without metadata could never be transferred.
                logger.info("Job metadata missing for %s, releasing for later", key)
                self.subscriber.nack()
                summary.nacked += 1
                return

            if self.result_bucket.exists(key):
                logger.info("Skipping already processed request: %s", key)
                summary.skipped_existing += 1
            else:
                self.worker.process(request, self.result_bucket)
                summary.processed += 1
        except Exception:  # noqa: BLE001
            logger.exception("Error processing request %s", key)
            self.subscriber.nack()
            summary.nacked += 1
            return

        self.subscriber.ack()
        summary.acked += 1
        self.worker.post_process()

    def request_stop(self, signal_name: str | None = None) -> None:
        logger.info("Stop requested%s", f" by {signal_name}" if signal_name else "")
        self._stop_requested = True
        if isinstance(self.subscriber, Stoppable):
            self.subscriber.stop()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
