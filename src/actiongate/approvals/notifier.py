"""Approver notification channels and fire-and-forget dispatch.

Notification is best effort: a slow or failing channel never blocks or
fails the approval workflow. Delivery runs in a background task bounded by
``notification_timeout_seconds`` and failures are only logged.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)


class NotificationChannel(Protocol):
    """External channel that tells an approver a request is waiting."""

    async def notify(self, approver_id: str, summary: dict[str, Any]) -> None: ...


class LoggingNotifier:
    """Channel that only logs; the default when no webhook is configured."""

    async def notify(self, approver_id: str, summary: dict[str, Any]) -> None:
        logger.info(
            "Approval notification for %s: %s (request %s)",
            approver_id,
            summary.get("description") or summary.get("message"),
            summary.get("request_id"),
        )


class WebhookNotifier:
    """POSTs the summary as JSON to a webhook URL."""

    def __init__(self, webhook_url: str, http_client: httpx.AsyncClient | None = None) -> None:
        self._webhook_url = webhook_url
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def notify(self, approver_id: str, summary: dict[str, Any]) -> None:
        response = await self._http_client.post(
            self._webhook_url,
            json={"approver_id": approver_id, **summary},
        )
        response.raise_for_status()


class NotificationDispatcher:
    """Runs channel deliveries as tracked background tasks."""

    def __init__(self, channel: NotificationChannel, timeout_seconds: float = 10.0) -> None:
        self._channel = channel
        self._timeout_seconds = timeout_seconds
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def channel(self) -> NotificationChannel:
        return self._channel

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def dispatch(
        self,
        approver_id: str,
        summary: dict[str, Any],
        *,
        timeout_seconds: float | None = None,
    ) -> asyncio.Task[None]:
        """Schedule delivery and return immediately."""
        timeout = timeout_seconds if timeout_seconds is not None else self._timeout_seconds
        task = asyncio.create_task(
            self._deliver(approver_id, summary, timeout),
            name=f"notify-{approver_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _deliver(self, approver_id: str, summary: dict[str, Any], timeout: float) -> None:
        try:
            await asyncio.wait_for(self._channel.notify(approver_id, summary), timeout=timeout)
        except TimeoutError:
            logger.warning(
                "Notification to %s timed out after %.1fs (request %s)",
                approver_id,
                timeout,
                summary.get("request_id"),
            )
        except Exception:
            logger.warning(
                "Notification to %s failed (request %s)",
                approver_id,
                summary.get("request_id"),
                exc_info=True,
            )

    async def drain(self, timeout_seconds: float = 10.0) -> None:
        """Wait for in-flight deliveries, e.g. on shutdown."""
        if not self._tasks:
            return
        _done, pending = await asyncio.wait(set(self._tasks), timeout=timeout_seconds)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("Cancelled %d undelivered notifications on drain", len(pending))
