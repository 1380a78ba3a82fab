"""Canary Release Controller.

Drives one canary execution through weighted traffic phases. Every tick the
controller pulls the canary variant's latest metrics window and either
counts a pass (advancing after enough consecutive passes), counts a breach
(rolling back after too many consecutive breaches), or pauses when no data is
available. Operator aborts are checked first on every tick.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from delivery_plane.core.deployment.metrics_provider import MetricsProvider, MetricsSample
from delivery_plane.core.deployment.routing import RoutingSnapshot, RoutingTable, Variant, weight_schedule
from delivery_plane.core.errors import ValidationError
from delivery_plane.core.notifications.client import NotificationEvent, NotificationEventType
from delivery_plane.utils.metrics import canary_ticks_total, canary_transitions_total

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CanaryStatus(str, Enum):
    """Canary execution status."""

    RUNNING = "running"  # Observing the current phase
    PAUSED = "paused"  # No metrics data; waiting for the next window
    PROMOTED = "promoted"  # Full cutover to the canary
    ROLLED_BACK = "rolled_back"  # Threshold breach or operator abort
    ABORTED = "aborted"  # Control loop shut down before completion

    @property
    def is_terminal(self) -> bool:
        return self in (CanaryStatus.PROMOTED, CanaryStatus.ROLLED_BACK, CanaryStatus.ABORTED)


@dataclass(frozen=True)
class CanaryPhase:
    """A step of the staged traffic shift."""

    traffic_weight_percent: int
    min_observation_windows: int = 3
    success_rate_threshold: float = 0.99
    max_latency_ms: float = 500.0
    consecutive_failure_limit: int = 3

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "traffic_weight_percent": self.traffic_weight_percent,
            "min_observation_windows": self.min_observation_windows,
            "success_rate_threshold": self.success_rate_threshold,
            "max_latency_ms": self.max_latency_ms,
            "consecutive_failure_limit": self.consecutive_failure_limit,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CanaryPhase":
        defaults = cls(traffic_weight_percent=0)
        return cls(
            traffic_weight_percent=int(data["traffic_weight_percent"]),
            min_observation_windows=int(
                data.get("min_observation_windows", defaults.min_observation_windows)
            ),
            success_rate_threshold=float(
                data.get("success_rate_threshold", defaults.success_rate_threshold)
            ),
            max_latency_ms=float(data.get("max_latency_ms", defaults.max_latency_ms)),
            consecutive_failure_limit=int(
                data.get("consecutive_failure_limit", defaults.consecutive_failure_limit)
            ),
        )


def validate_phases(phases: Iterable[Union[CanaryPhase, Mapping[str, Any]]]) -> Tuple[CanaryPhase, ...]:
    """Check a phase list and return it as a tuple.

    Raises:
        ValidationError: empty list, weights not strictly increasing or not
            ending at 100, or a threshold out of range.
    """
    try:
        result = tuple(p if isinstance(p, CanaryPhase) else CanaryPhase.from_dict(p) for p in phases)
    except (KeyError, TypeError, ValueError) as e:
        raise ValidationError(f"Malformed canary phase: {e}") from e

    if not result:
        raise ValidationError("At least one canary phase is required")

    previous = -1
    for index, phase in enumerate(result):
        problems = []
        if not 0 <= phase.traffic_weight_percent <= 100:
            problems.append("traffic_weight_percent must be within [0, 100]")
        if phase.traffic_weight_percent <= previous:
            problems.append("traffic weights must be strictly increasing")
        if phase.min_observation_windows < 1:
            problems.append("min_observation_windows must be >= 1")
        if not 0.0 <= phase.success_rate_threshold <= 1.0:
            problems.append("success_rate_threshold must be within [0.0, 1.0]")
        if phase.max_latency_ms < 0:
            problems.append("max_latency_ms must be >= 0")
        if phase.consecutive_failure_limit < 1:
            problems.append("consecutive_failure_limit must be >= 1")
        if problems:
            raise ValidationError(
                f"Invalid canary phase {index}: {'; '.join(problems)}",
                {"phase": index, "problems": problems},
            )
        previous = phase.traffic_weight_percent

    if result[-1].traffic_weight_percent != 100:
        raise ValidationError("The final canary phase must carry 100% of traffic")
    return result


@dataclass(frozen=True)
class MetricsWindow:
    """One observed metrics window of the canary variant."""

    window_start: datetime
    success_rate: float
    p95_latency_ms: float
    passed: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_start": self.window_start.isoformat(),
            "success_rate": self.success_rate,
            "p95_latency_ms": self.p95_latency_ms,
            "passed": self.passed,
        }


@dataclass
class CanaryExecution:
    """A canary rollout in progress (or archived once terminal)."""

    id: str
    service_name: str
    phases: Tuple[CanaryPhase, ...]
    status: CanaryStatus = CanaryStatus.RUNNING
    current_phase_index: int = 0
    canary_weight: int = 0
    consecutive_breaches: int = 0
    consecutive_passes: int = 0
    reason: str = ""
    history_limit: int = 100

    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    metrics_window_history: List[MetricsWindow] = field(default_factory=list)
    events: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def current_phase(self) -> CanaryPhase:
        return self.phases[self.current_phase_index]

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def is_active(self) -> bool:
        return self.status in (CanaryStatus.RUNNING, CanaryStatus.PAUSED)

    def record_window(self, window: MetricsWindow) -> None:
        self.metrics_window_history.append(window)
        if len(self.metrics_window_history) > self.history_limit:
            self.metrics_window_history = self.metrics_window_history[-self.history_limit:]

    def add_event(self, event_type: str, message: str, **kwargs: Any) -> None:
        """Add an event to the execution history."""
        self.events.append({
            "timestamp": _utcnow().isoformat(),
            "type": event_type,
            "message": message,
            **kwargs,
        })
        if len(self.events) > self.history_limit:
            self.events = self.events[-self.history_limit:]

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "service_name": self.service_name,
            "status": self.status.value,
            "reason": self.reason,
            "current_phase_index": self.current_phase_index,
            "canary_weight": self.canary_weight,
            "consecutive_breaches": self.consecutive_breaches,
            "consecutive_passes": self.consecutive_passes,
            "phases": [p.to_dict() for p in self.phases],
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "metrics_window_history": [w.to_dict() for w in self.metrics_window_history[-20:]],
            "events": self.events[-20:],  # Last 20 events
        }


def new_execution_id() -> str:
    return f"canary-{uuid.uuid4().hex[:12]}"


class CanaryController:
    """Control loop for one canary execution.

    The controller is the only writer of its execution and of the service's
    routing table. ``request_abort`` only sets a flag; the abort itself is
    applied at the next tick boundary (the loop is woken immediately).
    """

    def __init__(
        self,
        execution: CanaryExecution,
        metrics_provider: MetricsProvider,
        routing: RoutingTable,
        notifier: Optional[Any] = None,
        tick_interval: float = 30.0,
        query_timeout: float = 5.0,
        clock: Callable[[], datetime] = _utcnow,
        on_complete: Optional[Callable[[CanaryExecution], None]] = None,
    ):
        """Initialize controller.

        Args:
            execution: Execution to drive
            metrics_provider: Source of canary metrics windows
            routing: Routing table of the execution's service
            notifier: Object with ``notify(NotificationEvent)`` (sync or async)
            tick_interval: Seconds between control loop ticks
            query_timeout: Seconds before a metrics query counts as no data
            clock: Wall clock used for metrics windows
            on_complete: Called once when the execution reaches a terminal status
        """
        self._execution = execution
        self._metrics_provider = metrics_provider
        self._routing = routing
        self._notifier = notifier
        self._tick_interval = tick_interval
        self._query_timeout = query_timeout
        self._clock = clock
        self._on_complete = on_complete

        self._window_start: Optional[datetime] = None
        self._abort_reason: Optional[str] = None
        self._stopping = False
        self._wake = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def execution(self) -> CanaryExecution:
        return self._execution

    @property
    def snapshot(self) -> RoutingSnapshot:
        return self._routing.snapshot

    @property
    def abort_requested(self) -> bool:
        return self._abort_reason is not None

    def activate(self) -> RoutingSnapshot:
        """Publish the first phase's weight and open the first window."""
        execution = self._execution
        first = execution.phases[0]
        self._window_start = self._clock()
        snapshot = self._publish(first.traffic_weight_percent)
        execution.add_event(
            "started",
            f"Started rollout at {first.traffic_weight_percent}%",
            schedule=weight_schedule([p.traffic_weight_percent for p in execution.phases]),
        )
        canary_transitions_total.labels(service=execution.service_name, status=execution.status.value).inc()
        logger.info(
            f"Started canary {execution.id} for {execution.service_name}",
            extra=self._log_extra(),
        )
        return snapshot

    def request_abort(self, reason: str = "aborted by operator") -> None:
        """Ask the loop to roll back at the next tick boundary."""
        if self._abort_reason is None:
            self._abort_reason = reason
            self._execution.add_event("abort_requested", reason)
        self._wake.set()

    async def tick(self) -> CanaryStatus:
        """Run one control loop evaluation."""
        execution = self._execution
        if execution.is_terminal:
            return execution.status

        if self._abort_reason is not None:
            await self._roll_back(self._abort_reason)
            canary_ticks_total.labels(service=execution.service_name, outcome="aborted").inc()
            return execution.status

        window_start = self._window_start or execution.started_at
        window_end = self._clock()
        sample, problem = await self._query_window(window_start, window_end)

        # Abort observed while the query was in flight: discard the result
        if self._abort_reason is not None:
            await self._roll_back(self._abort_reason)
            canary_ticks_total.labels(service=execution.service_name, outcome="aborted").inc()
            return execution.status

        if sample is None:
            await self._pause(problem)
            canary_ticks_total.labels(service=execution.service_name, outcome="no_data").inc()
            return execution.status

        self._window_start = window_end
        if execution.status == CanaryStatus.PAUSED:
            self._set_status(CanaryStatus.RUNNING, "metrics available again")
            execution.add_event("resumed", "Metrics available, rollout resumed")

        await self._evaluate(window_start, sample)
        return execution.status

    async def _query_window(
        self, window_start: datetime, window_end: datetime
    ) -> Tuple[Optional[MetricsSample], str]:
        service = self._execution.service_name
        query = self._metrics_provider.query

        async def _query() -> Optional[MetricsSample]:
            if asyncio.iscoroutinefunction(query):
                result = await query(service, Variant.CANARY.value, window_start, window_end)
            else:
                # Sync providers run in the default executor so the timeout can fire
                loop = asyncio.get_running_loop()
                result = await loop.run_in_executor(
                    None, lambda: query(service, Variant.CANARY.value, window_start, window_end)
                )
            if inspect.isawaitable(result):
                result = await result
            return result

        try:
            sample = await asyncio.wait_for(_query(), timeout=self._query_timeout)
        except asyncio.TimeoutError:
            return None, f"metrics query timed out after {self._query_timeout}s"
        except Exception as e:
            logger.warning(f"Metrics provider error for {service}: {e}", extra=self._log_extra())
            return None, f"metrics provider error: {e}"
        if sample is None:
            return None, "no metrics data for window"
        return sample, ""

    async def _evaluate(self, window_start: datetime, sample: MetricsSample) -> None:
        execution = self._execution
        phase = execution.current_phase

        breaches = []
        if sample.success_rate < phase.success_rate_threshold:
            breaches.append(
                f"success rate {sample.success_rate:.2%} below {phase.success_rate_threshold:.2%}"
            )
        if sample.p95_latency_ms > phase.max_latency_ms:
            breaches.append(
                f"p95 latency {sample.p95_latency_ms:.0f}ms exceeds {phase.max_latency_ms:.0f}ms"
            )
        passed = not breaches

        execution.record_window(
            MetricsWindow(
                window_start=window_start,
                success_rate=sample.success_rate,
                p95_latency_ms=sample.p95_latency_ms,
                passed=passed,
            )
        )

        if passed:
            execution.consecutive_passes += 1
            execution.consecutive_breaches = 0
            canary_ticks_total.labels(service=execution.service_name, outcome="pass").inc()
            if execution.consecutive_passes >= phase.min_observation_windows:
                await self._advance()
            return

        reason = "; ".join(breaches)
        execution.consecutive_breaches += 1
        execution.consecutive_passes = 0
        canary_ticks_total.labels(service=execution.service_name, outcome="breach").inc()
        execution.add_event(
            "breach",
            reason,
            phase=execution.current_phase_index,
            consecutive_breaches=execution.consecutive_breaches,
        )
        logger.warning(
            f"Canary {execution.id} breach {execution.consecutive_breaches}/"
            f"{phase.consecutive_failure_limit}: {reason}",
            extra=self._log_extra(reason=reason),
        )
        if execution.consecutive_breaches >= phase.consecutive_failure_limit:
            await self._roll_back(f"threshold breach: {reason}")

    async def _advance(self) -> None:
        """Advance to the next phase or promote after the last one."""
        execution = self._execution
        next_index = execution.current_phase_index + 1
        execution.consecutive_passes = 0
        execution.consecutive_breaches = 0

        if next_index >= len(execution.phases):
            self._publish(100)
            self._finish(CanaryStatus.PROMOTED, "all phases passed")
            execution.add_event("promoted", "Canary promoted to 100% of traffic")
            await self._notify(NotificationEventType.CANARY_PROMOTED, execution.reason)
            return

        execution.current_phase_index = next_index
        weight = execution.phases[next_index].traffic_weight_percent
        self._publish(weight)
        execution.add_event("advanced", f"Advanced to {weight}%", phase=next_index)
        logger.info(
            f"Advanced canary {execution.id} to phase {next_index} ({weight}%)",
            extra=self._log_extra(),
        )

    async def _roll_back(self, reason: str) -> None:
        execution = self._execution
        self._publish(0)
        self._finish(CanaryStatus.ROLLED_BACK, reason)
        execution.add_event("rolled_back", f"Rollback completed: {reason}")
        await self._notify(NotificationEventType.CANARY_ROLLED_BACK, reason)

    async def _pause(self, reason: str) -> None:
        execution = self._execution
        if execution.status == CanaryStatus.PAUSED:
            execution.reason = reason
            return
        self._set_status(CanaryStatus.PAUSED, reason)
        execution.add_event("paused", f"Rollout paused at {execution.canary_weight}%: {reason}")
        await self._notify(NotificationEventType.CANARY_PAUSED, reason)

    def _publish(self, weight: int) -> RoutingSnapshot:
        snapshot = self._routing.publish(weight)
        self._execution.canary_weight = snapshot.canary_weight
        return snapshot

    def _set_status(self, status: CanaryStatus, reason: str) -> None:
        execution = self._execution
        previous = execution.status
        execution.status = status
        execution.reason = reason
        canary_transitions_total.labels(service=execution.service_name, status=status.value).inc()
        log = logger.warning if status in (CanaryStatus.PAUSED, CanaryStatus.ROLLED_BACK) else logger.info
        log(
            f"Canary {execution.id}: {previous.value} -> {status.value} ({reason})",
            extra=self._log_extra(reason=reason),
        )

    def _finish(self, status: CanaryStatus, reason: str) -> None:
        self._set_status(status, reason)
        self._execution.completed_at = _utcnow()
        if self._on_complete:
            try:
                self._on_complete(self._execution)
            except Exception as e:
                logger.error(f"Completion callback error for {self._execution.id}: {e}")

    async def _notify(self, event_type: NotificationEventType, reason: str) -> None:
        if self._notifier is None:
            return
        execution = self._execution
        event = NotificationEvent(
            type=event_type,
            execution_id=execution.id,
            phase=execution.current_phase_index,
            reason=reason,
            service=execution.service_name,
            metadata={"canary_weight": execution.canary_weight},
        )
        try:
            result = self._notifier.notify(event)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            logger.error(f"Failed to notify {event_type.value} for {execution.id}: {e}")

    def _log_extra(self, **kwargs: Any) -> Dict[str, Any]:
        execution = self._execution
        return {
            "execution_id": execution.id,
            "service": execution.service_name,
            "phase": execution.current_phase_index,
            "canary_weight": execution.canary_weight,
            **kwargs,
        }

    async def run(self) -> None:
        """Background control loop: wait one interval, then tick."""
        while not self._execution.is_terminal and not self._stopping:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self._tick_interval)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            if self._stopping:
                break
            try:
                await self.tick()
            except Exception as e:
                # A failed tick defers the decision to the next one
                logger.exception(f"Error in canary control loop: {e}", extra=self._log_extra())

    def start(self) -> asyncio.Task:
        """Start the control loop task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name=f"canary:{self._execution.id}")
        return self._task

    async def stop(self) -> None:
        """Shut the loop down; a non-terminal execution becomes ``Aborted``."""
        self._stopping = True
        self._wake.set()
        if self._task is not None and not self._task.done():
            await self._task
        if not self._execution.is_terminal:
            self._publish(0)
            self._finish(CanaryStatus.ABORTED, "control loop stopped")
            self._execution.add_event("aborted", "Control loop stopped before completion")
            await self._notify(NotificationEventType.CANARY_ABORTED, self._execution.reason)
