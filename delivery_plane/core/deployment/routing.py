"""Traffic split snapshots consumed by the request-routing layer.

Weights are percent of total traffic. The canary controller is the only
writer of a ``RoutingTable``; it publishes immutable snapshots by swapping a
single reference, so readers never observe a torn update.
"""

from __future__ import annotations

import hashlib
import logging
import random
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from delivery_plane.utils.metrics import canary_weight

logger = logging.getLogger(__name__)


class Variant(str, Enum):
    STABLE = "stable"
    CANARY = "canary"


class RoutingStrategy(str, Enum):
    """How a request is assigned to stable or canary."""

    STICKY = "sticky"  # Hash of user id + service, stable per user
    RANDOM = "random"  # Independent draw per request


@dataclass(frozen=True)
class RoutingSnapshot:
    stable_weight: int = 100
    canary_weight: int = 0
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stable_weight": self.stable_weight,
            "canary_weight": self.canary_weight,
            "version": self.version,
        }


class RoutingTable:
    """Versioned, copy-on-write traffic split for one service."""

    def __init__(
        self,
        service: str,
        on_publish: Optional[Callable[[str, RoutingSnapshot], None]] = None,
    ):
        self._service = service
        self._snapshot = RoutingSnapshot()
        self._on_publish = on_publish
        self._write_lock = threading.Lock()

    @property
    def service(self) -> str:
        return self._service

    @property
    def snapshot(self) -> RoutingSnapshot:
        return self._snapshot

    def publish(self, canary_percent: int) -> RoutingSnapshot:
        """Publish a new split with the canary at ``canary_percent``."""
        canary_percent = max(0, min(100, int(canary_percent)))
        with self._write_lock:
            snapshot = RoutingSnapshot(
                stable_weight=100 - canary_percent,
                canary_weight=canary_percent,
                version=self._snapshot.version + 1,
            )
            self._snapshot = snapshot

        canary_weight.labels(service=self._service).set(canary_percent)
        logger.info(
            f"Routing for {self._service}: canary {canary_percent}% (v{snapshot.version})",
            extra={"service": self._service, "canary_weight": canary_percent},
        )
        if self._on_publish:
            try:
                self._on_publish(self._service, snapshot)
            except Exception as e:
                logger.error(f"Routing publish callback error for {self._service}: {e}")
        return snapshot


def routing_bucket(user_id: str, service: str) -> int:
    digest = hashlib.md5(f"{service}:{user_id}".encode("utf-8")).hexdigest()  # nosec B324
    return int(digest[:8], 16) % 100


def choose_variant(
    strategy: RoutingStrategy,
    snapshot: RoutingSnapshot,
    service: str,
    user_id: Optional[str] = None,
    rng: Optional[random.Random] = None,
) -> Variant:
    """Assign a request to stable or canary given the current split."""
    if snapshot.canary_weight <= 0:
        return Variant.STABLE
    if snapshot.canary_weight >= 100:
        return Variant.CANARY

    if strategy == RoutingStrategy.STICKY and user_id:
        bucket = routing_bucket(user_id, service)
    else:
        bucket = (rng or random).randrange(100)  # nosec B311
    return Variant.CANARY if bucket < snapshot.canary_weight else Variant.STABLE


def weight_schedule(weights: List[int]) -> str:
    """Human readable phase schedule, e.g. ``5% -> 25% -> 100%``."""
    return " -> ".join(f"{w}%" for w in weights)
