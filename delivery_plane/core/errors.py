"""Shared error codes and exception taxonomy.

Request-path components (flag evaluation, breaker gating, dispatch) report
problems as values. The exceptions below are raised by loaders and by the
operator surface, and carry an ``ErrorCode`` so API and CLI layers can map
them to response or exit codes.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(str, Enum):
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    METRICS_UNAVAILABLE = "METRICS_UNAVAILABLE"
    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    DEPENDENCY_FAILURE = "DEPENDENCY_FAILURE"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ControlPlaneError(Exception):
    """Base error for the control plane."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class ConfigurationError(ControlPlaneError):
    """Invalid flag or phase definition rejected at load time."""

    code = ErrorCode.CONFIGURATION_ERROR


class ValidationError(ConfigurationError):
    """Operator-supplied definition failed validation."""

    code = ErrorCode.VALIDATION_FAILED


class NotFoundError(ControlPlaneError):
    code = ErrorCode.NOT_FOUND


class ConflictError(ControlPlaneError):
    """Operator command conflicts with current state (no state change made)."""

    code = ErrorCode.CONFLICT


class MetricsUnavailable(ControlPlaneError):
    """Metrics provider timed out, errored or returned no data."""

    code = ErrorCode.METRICS_UNAVAILABLE


class CircuitOpenError(ControlPlaneError):
    """Raised on request by callers that prefer exceptions over verdicts."""

    code = ErrorCode.CIRCUIT_OPEN

    def __init__(self, name: str, reason: str = ""):
        self.name = name
        self.reason = reason
        super().__init__(
            f"Circuit breaker '{name}' is open: {reason}",
            {"breaker": name, "reason": reason},
        )


class DependencyFailure(ControlPlaneError):
    """A downstream call failed; recorded by the breaker, never retried."""

    code = ErrorCode.DEPENDENCY_FAILURE


__all__ = [
    "ErrorCode",
    "ControlPlaneError",
    "ConfigurationError",
    "ValidationError",
    "NotFoundError",
    "ConflictError",
    "MetricsUnavailable",
    "CircuitOpenError",
    "DependencyFailure",
]
