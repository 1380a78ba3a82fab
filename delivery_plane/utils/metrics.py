"""Prometheus metrics registration for the control plane.

All metric objects are defined at import time and exported through the
default registry (served at ``/metrics`` by the API app).
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

flag_evaluations_total = Counter(
    "delivery_flag_evaluations_total",
    "Feature flag evaluations",
    ["flag", "enabled", "reason"],
)

flag_config_reloads_total = Counter(
    "delivery_flag_config_reloads_total",
    "Flag document load attempts",
    ["status"],
)

circuit_state = Gauge(
    "delivery_circuit_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["breaker"],
)

circuit_rejections_total = Counter(
    "delivery_circuit_rejections_total",
    "Calls rejected by a circuit breaker",
    ["breaker", "reason"],
)

circuit_transitions_total = Counter(
    "delivery_circuit_transitions_total",
    "Circuit breaker state transitions",
    ["breaker", "from_state", "to_state"],
)

canary_weight = Gauge(
    "delivery_canary_weight_percent",
    "Traffic weight currently published for the canary variant",
    ["service"],
)

canary_transitions_total = Counter(
    "delivery_canary_transitions_total",
    "Canary execution status changes",
    ["service", "status"],
)

canary_ticks_total = Counter(
    "delivery_canary_ticks_total",
    "Canary control loop ticks by outcome",
    ["service", "outcome"],
)

metrics_samples_dropped_total = Counter(
    "delivery_metrics_samples_dropped_total",
    "Recorded outcomes evicted from the in-memory metrics buffer before being read",
    ["service", "variant"],
)

dispatch_total = Counter(
    "delivery_dispatch_total",
    "Coordinator dispatch outcomes",
    ["service", "variant", "status"],
)

STATE_VALUES = {"closed": 0, "half_open": 1, "open": 2}
