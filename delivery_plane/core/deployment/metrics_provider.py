"""Metrics sources for canary evaluation.

A provider answers ``query(service_name, variant, window_start, window_end)``
with a ``MetricsSample`` or ``None`` when the window holds no data. Providers
may be sync or async and may raise; the canary controller treats errors,
timeouts and ``None`` alike as "no data".
"""

from __future__ import annotations

import logging
import math
import threading
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timezone
from string import Template
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Protocol, Tuple, Union

import httpx

from delivery_plane.core.errors import MetricsUnavailable
from delivery_plane.utils.metrics import metrics_samples_dropped_total

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MetricsSample:
    """Aggregated metrics for one variant over one window."""

    success_rate: float
    p95_latency_ms: float
    requests: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success_rate": self.success_rate,
            "p95_latency_ms": self.p95_latency_ms,
            "requests": self.requests,
        }


class MetricsProvider(Protocol):
    def query(
        self,
        service_name: str,
        variant: str,
        window_start: datetime,
        window_end: datetime,
    ) -> Union[Optional[MetricsSample], Awaitable[Optional[MetricsSample]]]:
        ...


def percentile(values: list, pct: float) -> float:
    """Nearest-rank percentile of a non-empty list."""
    ordered = sorted(values)
    rank = max(1, math.ceil(pct / 100.0 * len(ordered)))
    return float(ordered[rank - 1])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryMetricsProvider:
    """Aggregates call outcomes recorded in-process.

    The coordinator feeds every dispatched call into ``record``; the canary
    controller reads windows back through ``query``.
    """

    def __init__(
        self,
        max_samples: int = 10000,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._max_samples = max_samples
        self._clock = clock
        self._samples: Dict[Tuple[str, str], Deque[Tuple[datetime, bool, float]]] = defaultdict(
            lambda: deque(maxlen=self._max_samples)
        )
        self._lock = threading.Lock()

    def record(
        self,
        service_name: str,
        variant: str,
        success: bool,
        latency_ms: float,
        at: Optional[datetime] = None,
    ) -> None:
        with self._lock:
            samples = self._samples[(service_name, variant)]
            full = len(samples) == self._max_samples
            samples.append((at or self._clock(), success, latency_ms))
        if full:
            # Oldest outcome overwritten; busy windows are aggregated over a truncated tail
            metrics_samples_dropped_total.labels(service=service_name, variant=variant).inc()

    def query(
        self,
        service_name: str,
        variant: str,
        window_start: datetime,
        window_end: datetime,
    ) -> Optional[MetricsSample]:
        with self._lock:
            window = [
                (success, latency)
                for ts, success, latency in self._samples.get((service_name, variant), ())
                if window_start <= ts < window_end
            ]
        if not window:
            return None
        successes = sum(1 for success, _ in window if success)
        return MetricsSample(
            success_rate=successes / len(window),
            p95_latency_ms=percentile([latency for _, latency in window], 95),
            requests=len(window),
        )

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()


DEFAULT_SUCCESS_QUERY = (
    'sum(rate(http_requests_total{service="$service",variant="$variant",code!~"5.."}[${window}s]))'
    ' / sum(rate(http_requests_total{service="$service",variant="$variant"}[${window}s]))'
)
DEFAULT_LATENCY_QUERY = (
    "histogram_quantile(0.95, sum(rate("
    'http_request_duration_seconds_bucket{service="$service",variant="$variant"}[${window}s]'
    ")) by (le)) * 1000"
)


class PrometheusMetricsProvider:
    """Reads canary windows from a Prometheus HTTP API."""

    def __init__(
        self,
        base_url: str,
        success_query: str = DEFAULT_SUCCESS_QUERY,
        latency_query: str = DEFAULT_LATENCY_QUERY,
        timeout: float = 5.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.success_query = Template(success_query)
        self.latency_query = Template(latency_query)
        self.timeout = timeout
        self._client = client

    async def _instant(self, client: httpx.AsyncClient, promql: str, at: datetime) -> Optional[float]:
        response = await client.get(
            f"{self.base_url}/api/v1/query",
            params={"query": promql, "time": at.timestamp()},
            timeout=self.timeout,
        )
        response.raise_for_status()
        payload = response.json()
        if payload.get("status") != "success":
            raise MetricsUnavailable(f"Prometheus query failed: {payload.get('error', 'unknown')}")
        result = payload.get("data", {}).get("result", [])
        if not result:
            return None
        value = float(result[0]["value"][1])
        return None if math.isnan(value) else value

    async def query(
        self,
        service_name: str,
        variant: str,
        window_start: datetime,
        window_end: datetime,
    ) -> Optional[MetricsSample]:
        window = max(1, int((window_end - window_start).total_seconds()))
        params = {"service": service_name, "variant": variant, "window": window}
        try:
            if self._client is not None:
                success = await self._instant(self._client, self.success_query.substitute(params), window_end)
                latency = await self._instant(self._client, self.latency_query.substitute(params), window_end)
            else:
                async with httpx.AsyncClient() as client:
                    success = await self._instant(client, self.success_query.substitute(params), window_end)
                    latency = await self._instant(client, self.latency_query.substitute(params), window_end)
        except httpx.HTTPError as e:
            raise MetricsUnavailable(f"Prometheus unreachable: {e}") from e
        except (KeyError, IndexError, ValueError) as e:
            raise MetricsUnavailable(f"Unexpected Prometheus response: {e}") from e

        if success is None or latency is None:
            return None
        return MetricsSample(success_rate=success, p95_latency_ms=latency)
