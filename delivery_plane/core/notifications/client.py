"""Notification client for rollout events."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class NotificationPriority(str, Enum):
    """Notification priority levels."""

    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"


class NotificationEventType(str, Enum):
    """Types of control plane events."""

    CANARY_PROMOTED = "canary_promoted"
    CANARY_ROLLED_BACK = "canary_rolled_back"
    CANARY_PAUSED = "canary_paused"
    CANARY_ABORTED = "canary_aborted"


_PRIORITIES = {
    NotificationEventType.CANARY_PROMOTED: NotificationPriority.NORMAL,
    NotificationEventType.CANARY_ROLLED_BACK: NotificationPriority.URGENT,
    NotificationEventType.CANARY_PAUSED: NotificationPriority.HIGH,
    NotificationEventType.CANARY_ABORTED: NotificationPriority.HIGH,
}


@dataclass
class NotificationEvent:
    """A rollout event pushed to operators."""

    type: NotificationEventType
    execution_id: str
    phase: int
    reason: str = ""
    service: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def priority(self) -> NotificationPriority:
        return _PRIORITIES.get(self.type, NotificationPriority.NORMAL)

    @property
    def title(self) -> str:
        return f"{self.type.value.replace('_', ' ').title()}: {self.service or self.execution_id}"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "type": self.type.value,
            "execution_id": self.execution_id,
            "phase": self.phase,
            "reason": self.reason,
            "service": self.service,
            "priority": self.priority.value,
            "timestamp": self.timestamp.isoformat(),
            "metadata": self.metadata,
        }


class NotificationChannel(ABC):
    """Abstract base class for notification channels."""

    name: str = "base"

    @abstractmethod
    async def send(self, event: NotificationEvent) -> bool:
        """Send a notification."""
        pass

    @abstractmethod
    def is_configured(self) -> bool:
        """Check if channel is properly configured."""
        pass


class NotificationClient:
    """Fans rollout events out to registered channels.

    Channels registered as defaults receive every event type that has no
    explicit subscription. Unconfigured channels are dropped at registration.
    """

    def __init__(self):
        self._channels: Dict[str, NotificationChannel] = {}
        self._routes: Dict[NotificationEventType, List[str]] = {}
        self._fallback: List[str] = []

    def register_channel(self, channel: NotificationChannel, default: bool = True) -> None:
        if not channel.is_configured():
            logger.warning("Skipping unconfigured notification channel %s", channel.name)
            return
        self._channels[channel.name] = channel
        if default and channel.name not in self._fallback:
            self._fallback.append(channel.name)
        logger.info("Notification channel %s registered (default=%s)", channel.name, default)

    def subscribe(self, event_type: NotificationEventType, channel_name: str) -> None:
        """Route ``event_type`` to ``channel_name`` instead of the default channels."""
        names = self._routes.setdefault(event_type, [])
        if channel_name not in names:
            names.append(channel_name)

    def get_channels_for_event(self, event_type: NotificationEventType) -> List[NotificationChannel]:
        return self._resolve(self._routes.get(event_type, self._fallback))

    def _resolve(self, names: List[str]) -> List[NotificationChannel]:
        return [self._channels[name] for name in names if name in self._channels]

    async def notify(
        self,
        event: NotificationEvent,
        channels: Optional[List[str]] = None,
    ) -> Dict[str, bool]:
        """Deliver ``event`` and report per-channel delivery.

        A channel that raises is reported as ``False``; it never prevents
        delivery to the others.
        """
        targets = self._resolve(channels) if channels else self.get_channels_for_event(event.type)
        if not targets:
            logger.warning("No notification channel for %s (%s)", event.type.value, event.execution_id)
            return {}

        outcomes = await asyncio.gather(*(c.send(event) for c in targets), return_exceptions=True)
        delivered: Dict[str, bool] = {}
        for channel, outcome in zip(targets, outcomes):
            if isinstance(outcome, Exception):
                logger.error("Channel %s failed for %s: %s", channel.name, event.type.value, outcome)
                delivered[channel.name] = False
            else:
                delivered[channel.name] = bool(outcome)
        return delivered
