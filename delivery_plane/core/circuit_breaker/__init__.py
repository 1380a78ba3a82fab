"""Circuit Breaker Module.

Guards calls to an unreliable downstream with a Closed -> Open -> HalfOpen
state machine:

- Closed -> Open: consecutive failures reach ``failure_threshold``
- Open -> HalfOpen: a call is attempted after ``open_timeout_ms`` has elapsed
  since the last failure (exactly one caller gets the trial permit)
- HalfOpen -> Closed: ``half_open_trial_limit`` consecutive trials succeed
- HalfOpen -> Open: a trial fails

Gating returns a verdict value (``Allowed`` or ``Rejected``) in constant time
and never blocks on I/O. State is guarded by a ``threading.Lock`` so one
breaker can be shared by any number of request workers.
"""

from __future__ import annotations

import asyncio
import logging
import math
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Tuple, TypeVar, Union

from delivery_plane.core.errors import CircuitOpenError, ConfigurationError, DependencyFailure
from delivery_plane.utils.metrics import (
    STATE_VALUES,
    circuit_rejections_total,
    circuit_state,
    circuit_transitions_total,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"  # Normal operation
    OPEN = "open"  # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing recovery


@dataclass
class CircuitBreakerConfig:
    """Circuit breaker configuration."""

    failure_threshold: int = 5  # Consecutive failures to open circuit
    open_timeout_ms: int = 30000  # Time before a trial call is allowed
    half_open_trial_limit: int = 1  # Successful trials needed to close

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1")
        if self.open_timeout_ms < 0:
            raise ConfigurationError("open_timeout_ms must be >= 0")
        if self.half_open_trial_limit < 1:
            raise ConfigurationError("half_open_trial_limit must be >= 1")


@dataclass(frozen=True)
class Allowed:
    """Permit to make one downstream call."""

    trial: bool = False
    generation: int = 0


@dataclass(frozen=True)
class Rejected:
    """The call must not be made."""

    reason: str
    retry_after_ms: int = 0


Verdict = Union[Allowed, Rejected]


@dataclass(frozen=True)
class CallResult(Generic[T]):
    """Outcome of a call made through a breaker."""

    value: Optional[T] = None
    rejected: Optional[Rejected] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.rejected is None and self.error is None

    def unwrap(self, breaker_name: str = "") -> T:
        """Return the value or raise ``CircuitOpenError`` / ``DependencyFailure``."""
        if self.rejected is not None:
            raise CircuitOpenError(breaker_name, self.rejected.reason)
        if self.error is not None:
            raise DependencyFailure(str(self.error), {"breaker": breaker_name}) from self.error
        return self.value  # type: ignore[return-value]


@dataclass
class CircuitStats:
    """Circuit breaker statistics."""

    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    rejected_calls: int = 0
    trial_calls: int = 0

    last_failure_time: Optional[datetime] = None
    last_success_time: Optional[datetime] = None
    last_state_change: Optional[datetime] = None

    state_history: List[Tuple[datetime, CircuitState, CircuitState]] = field(default_factory=list)

    @property
    def failure_rate(self) -> float:
        """Calculate failure rate."""
        if self.total_calls == 0:
            return 0.0
        return self.failed_calls / self.total_calls

    def record_state_change(self, old_state: CircuitState, new_state: CircuitState) -> None:
        """Record state change."""
        now = datetime.now(timezone.utc)
        self.last_state_change = now
        self.state_history.append((now, old_state, new_state))

        # Keep only last 100 state changes
        if len(self.state_history) > 100:
            self.state_history = self.state_history[-100:]


class CircuitBreaker:
    """Circuit breaker for one (dependency, variant) pair."""

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        on_state_change: Optional[Callable[[CircuitState, CircuitState], None]] = None,
    ):
        self._name = name
        self._config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change

        self._state = CircuitState.CLOSED
        self._stats = CircuitStats()
        self._consecutive_failures = 0
        self._last_failure_at: Optional[float] = None
        self._trial_in_flight = False
        self._trial_successes = 0
        # Bumped on every transition; outcomes of permits from an older
        # generation update stats only.
        self._generation = 0
        self._lock = threading.Lock()

        circuit_state.labels(breaker=name).set(STATE_VALUES[self._state.value])

    @property
    def name(self) -> str:
        return self._name

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def consecutive_failures(self) -> int:
        return self._consecutive_failures

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    def try_acquire(self) -> Verdict:
        """Decide whether a call may proceed."""
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return Allowed(trial=False, generation=self._generation)

            if self._state == CircuitState.OPEN:
                elapsed_ms = (self._clock() - (self._last_failure_at or 0.0)) * 1000
                if elapsed_ms >= self._config.open_timeout_ms:
                    self._transition_to(CircuitState.HALF_OPEN)
                    return self._grant_trial()
                retry_after = max(0, math.ceil(self._config.open_timeout_ms - elapsed_ms))
                return self._reject("circuit is open", retry_after)

            if self._trial_in_flight:
                return self._reject("trial call in progress")
            return self._grant_trial()

    def _grant_trial(self) -> Allowed:
        self._trial_in_flight = True
        self._stats.trial_calls += 1
        return Allowed(trial=True, generation=self._generation)

    def _reject(self, reason: str, retry_after_ms: int = 0) -> Rejected:
        self._stats.rejected_calls += 1
        circuit_rejections_total.labels(breaker=self._name, reason=reason).inc()
        return Rejected(reason=reason, retry_after_ms=retry_after_ms)

    def record_success(self, permit: Allowed) -> None:
        """Record a successful call made under ``permit``."""
        with self._lock:
            self._stats.total_calls += 1
            self._stats.successful_calls += 1
            self._stats.last_success_time = datetime.now(timezone.utc)

            if permit.generation != self._generation:
                return

            if permit.trial and self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._trial_successes += 1
                if self._trial_successes >= self._config.half_open_trial_limit:
                    self._transition_to(CircuitState.CLOSED)
            elif self._state == CircuitState.CLOSED:
                self._consecutive_failures = 0

    def record_failure(self, permit: Allowed) -> None:
        """Record a failed call made under ``permit``."""
        with self._lock:
            self._stats.total_calls += 1
            self._stats.failed_calls += 1
            self._stats.last_failure_time = datetime.now(timezone.utc)

            if permit.generation != self._generation:
                return

            if permit.trial and self._state == CircuitState.HALF_OPEN:
                self._trial_in_flight = False
                self._last_failure_at = self._clock()
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED:
                self._consecutive_failures += 1
                self._last_failure_at = self._clock()
                if self._consecutive_failures >= self._config.failure_threshold:
                    self._transition_to(CircuitState.OPEN)

    def release(self, permit: Allowed) -> None:
        """Give back a permit whose call never produced an outcome."""
        with self._lock:
            if permit.trial and permit.generation == self._generation:
                self._trial_in_flight = False

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> CallResult[T]:
        """Execute ``func`` through the breaker. Exceptions become results."""
        verdict = self.try_acquire()
        if isinstance(verdict, Rejected):
            return CallResult(rejected=verdict)
        try:
            value = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(verdict)
            logger.debug(f"Circuit {self._name}: call failed: {e}", extra={"breaker": self._name})
            return CallResult(error=e)
        except BaseException:
            self.release(verdict)
            raise
        self.record_success(verdict)
        return CallResult(value=value)

    async def call_async(
        self,
        func: Callable[..., Union[T, Awaitable[T]]],
        *args: Any,
        **kwargs: Any,
    ) -> CallResult[T]:
        """Async variant of ``call``; ``func`` may return a value or awaitable."""
        verdict = self.try_acquire()
        if isinstance(verdict, Rejected):
            return CallResult(rejected=verdict)
        try:
            result = func(*args, **kwargs)
            if asyncio.iscoroutine(result) or isinstance(result, asyncio.Future):
                result = await result
        except Exception as e:
            self.record_failure(verdict)
            logger.debug(f"Circuit {self._name}: call failed: {e}", extra={"breaker": self._name})
            return CallResult(error=e)
        except BaseException:
            # Cancellation: no verdict on the dependency, free the trial slot
            self.release(verdict)
            raise
        self.record_success(verdict)
        return CallResult(value=result)  # type: ignore[arg-type]

    def _transition_to(self, new_state: CircuitState) -> None:
        """Transition to new state. Caller holds the lock."""
        old_state = self._state

        if old_state == new_state:
            return

        self._state = new_state
        self._generation += 1
        self._stats.record_state_change(old_state, new_state)
        circuit_state.labels(breaker=self._name).set(STATE_VALUES[new_state.value])
        circuit_transitions_total.labels(
            breaker=self._name, from_state=old_state.value, to_state=new_state.value
        ).inc()

        if new_state == CircuitState.OPEN:
            self._trial_successes = 0
            logger.warning(
                f"Circuit {self._name}: OPEN (was {old_state.value})",
                extra={"breaker": self._name, "state": new_state.value},
            )

        elif new_state == CircuitState.HALF_OPEN:
            self._trial_in_flight = False
            self._trial_successes = 0
            logger.info(
                f"Circuit {self._name}: HALF_OPEN (testing recovery)",
                extra={"breaker": self._name, "state": new_state.value},
            )

        elif new_state == CircuitState.CLOSED:
            self._consecutive_failures = 0
            self._trial_in_flight = False
            self._trial_successes = 0
            logger.info(
                f"Circuit {self._name}: CLOSED (recovered)",
                extra={"breaker": self._name, "state": new_state.value},
            )

        if self._on_state_change:
            try:
                self._on_state_change(old_state, new_state)
            except Exception as e:
                logger.error(f"State change callback error: {e}")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._consecutive_failures = 0
            self._last_failure_at = None

    def snapshot(self) -> Dict[str, Any]:
        """Point-in-time view for status reporting."""
        with self._lock:
            return {
                "name": self._name,
                "state": self._state.value,
                "consecutive_failures": self._consecutive_failures,
                "failure_threshold": self._config.failure_threshold,
                "open_timeout_ms": self._config.open_timeout_ms,
                "half_open_trial_limit": self._config.half_open_trial_limit,
                "total_calls": self._stats.total_calls,
                "failed_calls": self._stats.failed_calls,
                "rejected_calls": self._stats.rejected_calls,
                "failure_rate": self._stats.failure_rate,
                "last_failure_time": (
                    self._stats.last_failure_time.isoformat()
                    if self._stats.last_failure_time
                    else None
                ),
            }


def breaker_name(dependency: str, variant: str) -> str:
    return f"{dependency}:{variant}"


class CircuitBreakerRegistry:
    """Owns one circuit breaker per (dependency, variant) pair."""

    def __init__(
        self,
        default_config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._breakers: Dict[Tuple[str, str], CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = threading.Lock()

    def get_or_create(
        self,
        dependency: str,
        variant: str,
        config: Optional[CircuitBreakerConfig] = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker."""
        key = (dependency, variant)
        breaker = self._breakers.get(key)
        if breaker is not None:
            return breaker
        with self._lock:
            if key not in self._breakers:
                self._breakers[key] = CircuitBreaker(
                    name=breaker_name(dependency, variant),
                    config=config or self._default_config,
                    clock=self._clock,
                )
            return self._breakers[key]

    def get(self, dependency: str, variant: str) -> Optional[CircuitBreaker]:
        """Get circuit breaker by dependency and variant."""
        return self._breakers.get((dependency, variant))

    def for_dependency(self, dependency: str) -> Dict[str, CircuitBreaker]:
        """All breakers of a dependency keyed by variant."""
        return {
            variant: breaker
            for (dep, variant), breaker in list(self._breakers.items())
            if dep == dependency
        }

    def list_breakers(self) -> List[str]:
        """List all circuit breaker names."""
        return [breaker.name for breaker in list(self._breakers.values())]

    def get_all_stats(self) -> Dict[str, Dict[str, Any]]:
        """Get stats for all circuit breakers."""
        return {breaker.name: breaker.snapshot() for breaker in list(self._breakers.values())}

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for breaker in list(self._breakers.values()):
            breaker.reset()


__all__ = [
    "Allowed",
    "CallResult",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStats",
    "Rejected",
    "Verdict",
    "breaker_name",
]
