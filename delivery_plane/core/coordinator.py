"""Control plane composition root.

Routes each outbound call through three decisions, in order:

1. is the feature active for this request (flag evaluation)?
2. which variant serves it (the service's published routing snapshot)?
3. may the call to that variant proceed (its circuit breaker)?

The coordinator also hosts the operator surface: flag updates, canary
start/abort and breaker inspection.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from delivery_plane.core.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
    Rejected,
)
from delivery_plane.core.config import Settings
from delivery_plane.core.deployment.canary import (
    CanaryController,
    CanaryExecution,
    CanaryPhase,
    new_execution_id,
    validate_phases,
)
from delivery_plane.core.deployment.metrics_provider import (
    InMemoryMetricsProvider,
    MetricsProvider,
    PrometheusMetricsProvider,
)
from delivery_plane.core.deployment.routing import (
    RoutingSnapshot,
    RoutingStrategy,
    RoutingTable,
    Variant,
    choose_variant,
)
from delivery_plane.core.errors import (
    CircuitOpenError,
    ConflictError,
    DependencyFailure,
    NotFoundError,
    ValidationError,
)
from delivery_plane.core.feature_flags import (
    Decision,
    EvaluationContext,
    FlagDefinition,
    FlagStore,
    load_flags,
)
from delivery_plane.core.notifications import NotificationClient, setup_default_channels
from delivery_plane.utils.metrics import dispatch_total

logger = logging.getLogger(__name__)


class DispatchStatus(str, Enum):
    OK = "ok"
    FEATURE_DISABLED = "feature_disabled"
    CIRCUIT_OPEN = "circuit_open"
    FAILED = "failed"


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of a dispatched call, returned as a value."""

    status: DispatchStatus
    decision: Decision
    variant: Optional[Variant] = None
    value: Any = None
    reason: str = ""
    error: Optional[Exception] = None
    breaker: str = ""

    @property
    def ok(self) -> bool:
        return self.status == DispatchStatus.OK

    def raise_for_status(self) -> "DispatchResult":
        """Raise ``CircuitOpenError`` / ``DependencyFailure`` for those outcomes."""
        if self.status == DispatchStatus.CIRCUIT_OPEN:
            raise CircuitOpenError(self.breaker, self.reason)
        if self.status == DispatchStatus.FAILED:
            raise DependencyFailure(self.reason, {"breaker": self.breaker}) from self.error
        return self


Target = Callable[[], Any]


class ControlPlaneCoordinator:
    """Owns flags, breakers, routing tables and canary controllers."""

    def __init__(
        self,
        flags: Optional[FlagStore] = None,
        breakers: Optional[CircuitBreakerRegistry] = None,
        metrics_provider: Optional[MetricsProvider] = None,
        notifier: Optional[Any] = None,
        routing_strategy: RoutingStrategy = RoutingStrategy.STICKY,
        tick_interval: float = 30.0,
        query_timeout: float = 5.0,
        history_limit: int = 100,
        archive_limit: int = 100,
        rng: Optional[random.Random] = None,
        on_publish: Optional[Callable[[str, RoutingSnapshot], None]] = None,
    ):
        self.flags = flags or FlagStore()
        self.breakers = breakers or CircuitBreakerRegistry()
        self.metrics_provider = metrics_provider or InMemoryMetricsProvider()
        self.notifier = notifier
        self.routing_strategy = routing_strategy
        self.tick_interval = tick_interval
        self.query_timeout = query_timeout
        self.history_limit = history_limit
        self.archive_limit = archive_limit
        self._rng = rng or random.Random()
        self._on_publish = on_publish

        self._routing: Dict[str, RoutingTable] = {}
        self._active: Dict[str, CanaryController] = {}
        # Live executions by id; finished ones move to a bounded archive
        self._controllers: Dict[str, CanaryController] = {}
        self._archived: OrderedDict[str, CanaryExecution] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings) -> "ControlPlaneCoordinator":
        """Build a coordinator wired to the collaborators named in settings."""
        flags = FlagStore(load_flags(settings.FLAG_CONFIG_PATH)) if settings.FLAG_CONFIG_PATH else FlagStore()
        breakers = CircuitBreakerRegistry(
            CircuitBreakerConfig(
                failure_threshold=settings.BREAKER_FAILURE_THRESHOLD,
                open_timeout_ms=settings.BREAKER_OPEN_TIMEOUT_MS,
                half_open_trial_limit=settings.BREAKER_HALF_OPEN_TRIAL_LIMIT,
            )
        )
        provider: MetricsProvider
        if settings.PROMETHEUS_URL:
            provider = PrometheusMetricsProvider(
                settings.PROMETHEUS_URL, timeout=settings.METRICS_QUERY_TIMEOUT_SECONDS
            )
        else:
            provider = InMemoryMetricsProvider()
        notifier = NotificationClient()
        setup_default_channels(notifier, webhook_url=settings.NOTIFICATION_WEBHOOK_URL)
        return cls(
            flags=flags,
            breakers=breakers,
            metrics_provider=provider,
            notifier=notifier,
            routing_strategy=RoutingStrategy(settings.ROUTING_STRATEGY),
            tick_interval=settings.CANARY_TICK_INTERVAL_SECONDS,
            query_timeout=settings.METRICS_QUERY_TIMEOUT_SECONDS,
            history_limit=settings.METRICS_HISTORY_LIMIT,
            archive_limit=settings.CANARY_ARCHIVE_LIMIT,
        )

    # ------------------------------------------------------------------
    # Request path
    # ------------------------------------------------------------------

    def routing_table(self, service: str) -> RoutingTable:
        table = self._routing.get(service)
        if table is None:
            table = self._routing.setdefault(service, RoutingTable(service, on_publish=self._on_publish))
        return table

    def routing_snapshot(self, service: str) -> RoutingSnapshot:
        return self.routing_table(service).snapshot

    def evaluate(self, feature_key: str, ctx: EvaluationContext) -> Decision:
        return self.flags.engine().evaluate_key(feature_key, ctx)

    def choose_variant(self, service: str, ctx: EvaluationContext) -> Variant:
        return choose_variant(
            self.routing_strategy,
            self.routing_snapshot(service),
            service,
            user_id=ctx.user_id,
            rng=self._rng,
        )

    async def dispatch(
        self,
        feature_key: str,
        ctx: EvaluationContext,
        service: str,
        targets: Mapping[Union[Variant, str], Target],
        fallback: Any = None,
    ) -> DispatchResult:
        """Route one call through flag, traffic split and circuit breaker.

        Args:
            feature_key: Flag gating the feature path
            ctx: Request evaluation context
            service: Dependency name; keys routing table and breakers
            targets: Callables per variant (sync or async, no arguments).
                A missing canary target falls back to the stable one.
            fallback: Value returned when the feature is disabled or the
                breaker rejects the call

        Returns:
            DispatchResult describing what happened

        Raises:
            ValidationError: no stable target was supplied
        """
        decision = self.evaluate(feature_key, ctx)
        if not decision.enabled:
            dispatch_total.labels(service=service, variant="none", status=DispatchStatus.FEATURE_DISABLED.value).inc()
            return DispatchResult(
                status=DispatchStatus.FEATURE_DISABLED,
                decision=decision,
                value=fallback,
                reason=decision.reason.value,
            )

        variant = self.choose_variant(service, ctx)
        target = targets.get(variant) or targets.get(variant.value)
        if target is None and variant == Variant.CANARY:
            variant = Variant.STABLE
            target = targets.get(variant) or targets.get(variant.value)
        if target is None:
            raise ValidationError(
                f"No dispatch target for {service} variant {variant.value}",
                {"service": service, "variant": variant.value},
            )

        breaker = self.breakers.get_or_create(service, variant.value)
        started = time.perf_counter()
        result = await breaker.call_async(target)
        latency_ms = (time.perf_counter() - started) * 1000

        if isinstance(result.rejected, Rejected):
            dispatch_total.labels(service=service, variant=variant.value, status=DispatchStatus.CIRCUIT_OPEN.value).inc()
            return DispatchResult(
                status=DispatchStatus.CIRCUIT_OPEN,
                decision=decision,
                variant=variant,
                value=fallback,
                reason=result.rejected.reason,
                breaker=breaker.name,
            )

        self._record_outcome(service, variant, result.ok, latency_ms)
        if result.error is not None:
            dispatch_total.labels(service=service, variant=variant.value, status=DispatchStatus.FAILED.value).inc()
            return DispatchResult(
                status=DispatchStatus.FAILED,
                decision=decision,
                variant=variant,
                reason=str(result.error),
                error=result.error,
                breaker=breaker.name,
            )

        dispatch_total.labels(service=service, variant=variant.value, status=DispatchStatus.OK.value).inc()
        return DispatchResult(
            status=DispatchStatus.OK,
            decision=decision,
            variant=variant,
            value=result.value,
            breaker=breaker.name,
        )

    def _record_outcome(self, service: str, variant: Variant, success: bool, latency_ms: float) -> None:
        record = getattr(self.metrics_provider, "record", None)
        if record is None:
            return
        try:
            record(service, variant.value, success, latency_ms)
        except Exception as e:
            logger.error(f"Failed to record outcome for {service}: {e}", extra={"service": service})

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def set_flag(
        self,
        key: str,
        enabled: bool,
        rollout_percentage: Optional[int] = None,
    ) -> FlagDefinition:
        return self.flags.set_flag(key, enabled, rollout_percentage)

    async def start_canary(
        self,
        service_name: str,
        phases: Iterable[Union[CanaryPhase, Mapping[str, Any]]],
        run_loop: bool = True,
    ) -> CanaryExecution:
        """Start a canary rollout for ``service_name``.

        Raises:
            ValidationError: invalid phase list
            ConflictError: a canary is already running or paused for the service
        """
        if not service_name:
            raise ValidationError("service_name is required")
        validated = validate_phases(phases)

        current = self._active.get(service_name)
        if current is not None and current.execution.is_active:
            raise ConflictError(
                f"Canary {current.execution.id} is already {current.execution.status.value} for {service_name}",
                {"execution_id": current.execution.id, "service": service_name},
            )

        execution = CanaryExecution(
            id=new_execution_id(),
            service_name=service_name,
            phases=validated,
            history_limit=self.history_limit,
        )
        controller = CanaryController(
            execution,
            metrics_provider=self.metrics_provider,
            routing=self.routing_table(service_name),
            notifier=self.notifier,
            tick_interval=self.tick_interval,
            query_timeout=self.query_timeout,
            on_complete=self._archive,
        )
        self._active[service_name] = controller
        self._controllers[execution.id] = controller

        controller.activate()
        if run_loop:
            controller.start()
        return execution

    def abort_canary(self, execution_id: str, reason: str = "aborted by operator") -> CanaryExecution:
        """Request an abort; applied at the controller's next tick boundary.

        Raises:
            NotFoundError: unknown execution
            ConflictError: execution already terminal (no state change)
        """
        execution = self.get_execution(execution_id)
        if execution.is_terminal:
            raise ConflictError(
                f"Canary {execution_id} is already {execution.status.value}",
                {"execution_id": execution_id, "status": execution.status.value},
            )
        self._controllers[execution_id].request_abort(reason)
        logger.info(f"Abort requested for canary {execution_id}", extra={"execution_id": execution_id})
        return execution

    def get_execution(self, execution_id: str) -> CanaryExecution:
        controller = self._controllers.get(execution_id)
        if controller is not None:
            return controller.execution
        execution = self._archived.get(execution_id)
        if execution is None:
            raise NotFoundError(f"Canary {execution_id} not found", {"execution_id": execution_id})
        return execution

    def controller(self, execution_id: str) -> CanaryController:
        """Raises ``NotFoundError`` once the execution has finished."""
        controller = self._controllers.get(execution_id)
        if controller is None:
            raise NotFoundError(f"No live canary {execution_id}", {"execution_id": execution_id})
        return controller

    def get_circuit_state(self, dependency: str, variant: Union[Variant, str] = Variant.STABLE) -> CircuitState:
        """Raises ``NotFoundError`` when no call has been made to the pair yet."""
        variant_name = variant.value if isinstance(variant, Variant) else variant
        breaker = self.breakers.get(dependency, variant_name)
        if breaker is None:
            raise NotFoundError(
                f"No circuit breaker for {dependency} ({variant_name})",
                {"dependency": dependency, "variant": variant_name},
            )
        return breaker.state

    def get_status(self) -> Dict[str, Any]:
        """Overall control plane status."""
        return {
            "flags": {"version": self.flags.snapshot.version, "count": len(self.flags.snapshot)},
            "active_canaries": {
                service: controller.execution.to_dict() for service, controller in self._active.items()
            },
            "executions": {
                **{eid: e.status.value for eid, e in self._archived.items()},
                **{eid: c.execution.status.value for eid, c in self._controllers.items()},
            },
            "routing": {service: table.snapshot.to_dict() for service, table in self._routing.items()},
            "circuits": self.breakers.get_all_stats(),
        }

    def _archive(self, execution: CanaryExecution) -> None:
        controller = self._active.get(execution.service_name)
        if controller is not None and controller.execution is execution:
            del self._active[execution.service_name]
        self._controllers.pop(execution.id, None)
        self._archived[execution.id] = execution
        while len(self._archived) > self.archive_limit:
            evicted, _ = self._archived.popitem(last=False)
            logger.debug(f"Evicted archived canary {evicted}", extra={"execution_id": evicted})
        logger.info(
            f"Archived canary {execution.id} ({execution.status.value})",
            extra={"execution_id": execution.id, "service": execution.service_name},
        )

    async def shutdown(self) -> None:
        """Stop every running control loop."""
        controllers: List[CanaryController] = list(self._active.values())
        await asyncio.gather(*(c.stop() for c in controllers), return_exceptions=True)
