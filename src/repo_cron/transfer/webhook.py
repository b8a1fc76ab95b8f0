"""Completion webhook notifications."""

from __future__ import annotations

import logging

import httpx

from repo_cron.analysis import DEFAULT_USER_AGENT

logger = logging.getLogger(__name__)


class WebhookNotifier:
    """POSTs shard metadata to a configured URL; failures are only logged."""

    def __init__(
        self,
        url: str,
        *,
        timeout_seconds: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.url = url
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
            transport=transport,
        )

    def notify(self, payload: bytes) -> bool:
        try:
            response = self._client.post(
                self.url,
                content=payload,
                headers={"Content-Type": "application/json"},
            )
        except httpx.HTTPError as exc:
            logger.warning("Webhook POST to %s failed: %s", self.url, exc)
            return False
        if not response.is_success:
            logger.warning("Webhook POST to %s returned HTTP %d", self.url, response.status_code)
            return False
        return True

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> WebhookNotifier:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
