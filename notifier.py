#!/usr/bin/env python3
"""
New-item notifications.

A notifier receives at most one ``notify(count)`` call per aggregation cycle,
after the item map has been written. LogNotifier just logs the event;
WebhookNotifier POSTs a small JSON document to a configured URL (ntfy, Slack
bridges, home automation hooks and the like).
"""

from asyncio import TimeoutError
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from telemetry import trace_span

logger = get_logger("notifier")


def format_message(count: int) -> str:
    """Human-readable summary of a new-items event."""
    return f"{count} new item" if count == 1 else f"{count} new items"


class LogNotifier:
    """Report new items through the application log."""

    async def notify(self, count: int) -> None:
        logger.info(format_message(count))


class WebhookNotifier:
    """POST new-item events to a webhook as JSON."""

    def __init__(self, url: str, session: Optional[ClientSession] = None, timeout: Optional[int] = None):
        self.url = url
        self.session = session
        self.timeout = ClientTimeout(total=timeout or config.HTTP_TIMEOUT)

    def build_payload(self, count: int) -> Dict[str, Any]:
        return {"count": count, "message": format_message(count)}

    @trace_span(
        "notifier.webhook",
        tracer_name="notifier",
        attr_from_args=lambda self, count: {"notify.count": count},
    )
    async def notify(self, count: int) -> None:
        """Send one event. Delivery failures are logged, never raised."""
        request_kwargs = {
            "json": self.build_payload(count),
            "headers": {"User-Agent": config.USER_AGENT},
            "timeout": self.timeout,
        }

        async def _execute(client: ClientSession) -> None:
            async with client.post(self.url, **request_kwargs) as resp:
                resp.raise_for_status()

        try:
            if self.session is None:
                async with ClientSession(timeout=self.timeout) as owned_session:
                    await _execute(owned_session)
            else:
                await _execute(self.session)
            logger.info(f"Sent webhook notification: {format_message(count)}")
        except (ClientError, TimeoutError) as e:
            logger.error(f"Webhook notification to {self.url} failed: {e}")


def build_notifier():
    """Choose a notifier from configuration."""
    if config.NOTIFY_WEBHOOK_URL:
        return WebhookNotifier(config.NOTIFY_WEBHOOK_URL)
    return LogNotifier()
