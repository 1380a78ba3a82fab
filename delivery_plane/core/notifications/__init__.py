"""Rollout Notification System.

Pushes canary lifecycle events (promotion, rollback, pause, abort) to
operator channels:
- Log
- Generic Webhooks
- In-memory recording
"""

from delivery_plane.core.notifications.client import (
    NotificationChannel,
    NotificationClient,
    NotificationEvent,
    NotificationEventType,
    NotificationPriority,
)
from delivery_plane.core.notifications.channels import (
    LogChannel,
    RecordingChannel,
    WebhookChannel,
    setup_default_channels,
)

__all__ = [
    "NotificationChannel",
    "NotificationClient",
    "NotificationEvent",
    "NotificationEventType",
    "NotificationPriority",
    "LogChannel",
    "RecordingChannel",
    "WebhookChannel",
    "setup_default_channels",
]
