"""Notification Channel Implementations."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional

import httpx

from .client import NotificationChannel, NotificationClient, NotificationEvent, NotificationPriority

logger = logging.getLogger(__name__)


class WebhookChannel(NotificationChannel):
    """Generic webhook notification channel."""

    name = "webhook"

    def __init__(
        self,
        webhook_url: str = "",
        headers: Optional[Dict[str, str]] = None,
        channel_name: str = "webhook",
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.webhook_url = webhook_url
        self.headers = dict(headers or {})
        self.name = channel_name
        self.timeout = timeout
        self._transport = transport

        if "Content-Type" not in self.headers:
            self.headers["Content-Type"] = "application/json"

    def is_configured(self) -> bool:
        return bool(self.webhook_url)

    async def send(self, event: NotificationEvent) -> bool:
        """Send webhook notification."""
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    self.webhook_url,
                    json=event.to_dict(),
                    headers=self.headers,
                    timeout=self.timeout,
                )
            if response.status_code in (200, 201, 202, 204):
                logger.info(f"Webhook notification sent to {self.name}: {event.title}")
                return True
            logger.error(f"Webhook error ({self.name}): {response.status_code}")
            return False
        except httpx.HTTPError as e:
            logger.error(f"Failed to send webhook notification ({self.name}): {e}")
            return False


class LogChannel(NotificationChannel):
    """Writes events to the log; always configured."""

    name = "log"

    def is_configured(self) -> bool:
        return True

    async def send(self, event: NotificationEvent) -> bool:
        level = logging.WARNING if event.priority in (
            NotificationPriority.HIGH,
            NotificationPriority.URGENT,
        ) else logging.INFO
        logger.log(
            level,
            f"{event.title} (phase {event.phase}): {event.reason}",
            extra={
                "execution_id": event.execution_id,
                "service": event.service,
                "phase": event.phase,
                "reason": event.reason,
            },
        )
        return True


class RecordingChannel(NotificationChannel):
    """Keeps delivered events in memory (operator status pages, tests)."""

    name = "memory"

    def __init__(self, limit: int = 100):
        self.events: List[NotificationEvent] = []
        self._limit = limit

    def is_configured(self) -> bool:
        return True

    async def send(self, event: NotificationEvent) -> bool:
        self.events.append(event)
        if len(self.events) > self._limit:
            self.events = self.events[-self._limit:]
        return True


def setup_default_channels(client: NotificationClient, webhook_url: str = "") -> None:
    """Register the log channel and, when a URL is configured, a webhook."""
    client.register_channel(LogChannel())
    webhook = WebhookChannel(webhook_url=webhook_url)
    if webhook.is_configured():
        client.register_channel(webhook)
