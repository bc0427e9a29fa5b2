"""
rewardtrack.services.notifier — User-Facing Notification Surface
=================================================================

Trackers call ``notifier.notify(title, description, destructive=...)`` and
never look at a return value.  Delivery problems are logged, never raised.

Implementations:

* :class:`LogNotifier` — writes toasts to the log (default).
* :class:`WebhookNotifier` — posts each toast as a Discord embed to a
  webhook URL (``NOTIFY_WEBHOOK_URL``).
"""

from __future__ import annotations

import asyncio
import logging

import httpx

from rewardtrack.services.embeds import build_toast_embed, webhook_payload

logger = logging.getLogger(__name__)


class Notifier:
    """Fire-and-forget toast surface."""

    def notify(self, title: str, description: str, *, destructive: bool = False) -> None:
        raise NotImplementedError


class LogNotifier(Notifier):
    """Write toasts to the ``rewardtrack.toast`` logger."""

    def __init__(self, logger_name: str = "rewardtrack.toast") -> None:
        self._log = logging.getLogger(logger_name)

    def notify(self, title: str, description: str, *, destructive: bool = False) -> None:
        if destructive:
            self._log.warning("%s: %s", title, description)
        else:
            self._log.info("%s: %s", title, description)


class WebhookNotifier(Notifier):
    """Deliver toasts to a Discord webhook.

    Inside a running event loop the POST is scheduled as a task so the
    tracker never waits on it; outside a loop it is sent synchronously.
    """

    def __init__(
        self,
        url: str,
        *,
        username: str | None = "Rewards",
        timeout: float = 5.0,
    ) -> None:
        if not url:
            raise ValueError("WebhookNotifier requires a webhook URL")
        self.url = url
        self.username = username
        self.timeout = timeout
        self._pending: set[asyncio.Task] = set()

    def notify(self, title: str, description: str, *, destructive: bool = False) -> None:
        body = webhook_payload(
            build_toast_embed(title, description, destructive=destructive),
            username=self.username,
        )
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._post_sync(body)
            return

        task = loop.create_task(self._post(body), name="toast-webhook")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post(self, body: dict) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=body)
                resp.raise_for_status()
        except httpx.HTTPError:
            logger.exception("Failed to deliver toast to webhook")

    def _post_sync(self, body: dict) -> None:
        try:
            resp = httpx.post(self.url, json=body, timeout=self.timeout)
            resp.raise_for_status()
        except httpx.HTTPError:
            logger.exception("Failed to deliver toast to webhook")

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used on shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
