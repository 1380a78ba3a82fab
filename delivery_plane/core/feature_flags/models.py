"""Feature flag data model.

Definitions are immutable; a set of them is published as a versioned
``FlagSnapshot`` that readers hold by reference.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

ANY_ENVIRONMENT = "*"


class DecisionReason(str, Enum):
    """Which evaluation rule produced a decision."""

    ENVIRONMENT_MISMATCH = "environment_mismatch"
    EXPLICIT_USER = "explicit_user"
    SEGMENT_MATCH = "segment_match"
    PERCENTAGE_ROLLOUT = "percentage_rollout"
    STATIC_DEFAULT = "static_default"
    FLAG_NOT_FOUND = "flag_not_found"


@dataclass(frozen=True)
class FlagDefinition:
    """Feature flag definition."""

    key: str
    enabled: bool = False
    rollout_percentage: int = 0
    allowed_environments: FrozenSet[str] = frozenset()
    user_segments: FrozenSet[str] = frozenset()
    explicit_user_ids: FrozenSet[str] = frozenset()
    # (name, weight) pairs in declaration order
    variants: Tuple[Tuple[str, int], ...] = ()
    description: str = ""

    def allows_environment(self, environment: str) -> bool:
        return (
            ANY_ENVIRONMENT in self.allowed_environments
            or environment in self.allowed_environments
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "key": self.key,
            "description": self.description,
            "enabled": self.enabled,
            "rollout_percentage": self.rollout_percentage,
            "allowed_environments": sorted(self.allowed_environments),
            "user_segments": sorted(self.user_segments),
            "explicit_user_ids": sorted(self.explicit_user_ids),
            "variants": dict(self.variants),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FlagDefinition":
        """Create from dictionary. Performs no validation; see the loader."""
        variants = data.get("variants") or {}
        return cls(
            key=data["key"],
            description=data.get("description", ""),
            enabled=bool(data.get("enabled", False)),
            rollout_percentage=int(data.get("rollout_percentage", 0)),
            allowed_environments=frozenset(data.get("allowed_environments", ())),
            user_segments=frozenset(data.get("user_segments", ())),
            explicit_user_ids=frozenset(data.get("explicit_user_ids", ())),
            variants=tuple((str(k), int(v)) for k, v in variants.items()),
        )


@dataclass(frozen=True)
class EvaluationContext:
    """Per-request evaluation context. Never persisted."""

    environment: str
    user_id: Optional[str] = None
    segments: FrozenSet[str] = frozenset()
    attributes: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        environment: str,
        user_id: Optional[str] = None,
        segments: Iterable[str] = (),
        attributes: Optional[Mapping[str, str]] = None,
    ) -> "EvaluationContext":
        return cls(
            environment=environment,
            user_id=user_id,
            segments=frozenset(segments),
            attributes=dict(attributes or {}),
        )


@dataclass(frozen=True)
class Decision:
    """Outcome of evaluating a flag for a context."""

    enabled: bool
    reason: DecisionReason
    variant: Optional[str] = None
    bucket: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "variant": self.variant,
            "reason": self.reason.value,
            "bucket": self.bucket,
        }


class FlagSnapshot:
    """Immutable, versioned set of flag definitions."""

    __slots__ = ("_flags", "_version")

    def __init__(self, flags: Iterable[FlagDefinition] = (), version: int = 0):
        self._flags = MappingProxyType({flag.key: flag for flag in flags})
        self._version = version

    @property
    def version(self) -> int:
        return self._version

    @property
    def flags(self) -> Mapping[str, FlagDefinition]:
        return self._flags

    def get(self, key: str) -> Optional[FlagDefinition]:
        return self._flags.get(key)

    def __contains__(self, key: object) -> bool:
        return key in self._flags

    def __len__(self) -> int:
        return len(self._flags)

    def replace(self, flag: FlagDefinition) -> "FlagSnapshot":
        """Return a new snapshot with ``flag`` substituted and version bumped."""
        flags = dict(self._flags)
        flags[flag.key] = flag
        return FlagSnapshot(flags.values(), version=self._version + 1)
