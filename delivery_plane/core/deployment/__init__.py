"""Deployment Management for the control plane.

Provides:
- Canary execution control loop
- Versioned traffic split snapshots
- Metrics providers for canary evaluation
"""

from delivery_plane.core.deployment.canary import (
    CanaryController,
    CanaryExecution,
    CanaryPhase,
    CanaryStatus,
    MetricsWindow,
    validate_phases,
)
from delivery_plane.core.deployment.metrics_provider import (
    InMemoryMetricsProvider,
    MetricsProvider,
    MetricsSample,
    PrometheusMetricsProvider,
)
from delivery_plane.core.deployment.routing import (
    RoutingSnapshot,
    RoutingStrategy,
    RoutingTable,
    Variant,
    choose_variant,
)

__all__ = [
    # Canary
    "CanaryController",
    "CanaryExecution",
    "CanaryPhase",
    "CanaryStatus",
    "MetricsWindow",
    "validate_phases",
    # Metrics
    "InMemoryMetricsProvider",
    "MetricsProvider",
    "MetricsSample",
    "PrometheusMetricsProvider",
    # Routing
    "RoutingSnapshot",
    "RoutingStrategy",
    "RoutingTable",
    "Variant",
    "choose_variant",
]
