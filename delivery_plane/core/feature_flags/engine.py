"""Flag evaluation engine.

Evaluation is a pure function of (definition, context): no I/O and no
retained state, so it runs on the caller's thread without locking. Rules are
applied in a fixed order and the first match wins:

1. environment not allowed           -> disabled
2. user id in the explicit allow-list -> enabled
3. any segment matches               -> enabled
4. percentage rollout by user bucket -> enabled iff bucket < percentage
5. static default                    -> ``flag.enabled``
"""

from __future__ import annotations

import hashlib
import logging
from typing import Optional, Tuple

from delivery_plane.core.feature_flags.models import (
    Decision,
    DecisionReason,
    EvaluationContext,
    FlagDefinition,
    FlagSnapshot,
)
from delivery_plane.utils.metrics import flag_evaluations_total

logger = logging.getLogger(__name__)

# Unknown keys come from callers; one shared label keeps series bounded
UNKNOWN_FLAG_LABEL = "<unknown>"


def compute_bucket(user_id: str, flag_key: str) -> int:
    """Deterministic bucket (0-99) for a user and flag.

    MD5 over ``user_id + flag_key``; the first 32 bits of the digest are read
    as an unsigned integer, so the value is identical across processes and
    implementations.
    """
    digest = hashlib.md5((user_id + flag_key).encode("utf-8")).hexdigest()  # nosec B324
    return int(digest[:8], 16) % 100


def select_variant(variants: Tuple[Tuple[str, int], ...], bucket: int) -> Optional[str]:
    """Pick the variant whose cumulative weight range contains ``bucket``."""
    if sum(weight for _, weight in variants) != 100:
        return None
    upper = 0
    for name, weight in variants:
        upper += weight
        if bucket < upper:
            return name
    return None


class FlagEvaluationEngine:
    """Evaluates flags against an immutable snapshot."""

    def __init__(self, snapshot: Optional[FlagSnapshot] = None):
        self._snapshot = snapshot if snapshot is not None else FlagSnapshot()

    @property
    def snapshot(self) -> FlagSnapshot:
        return self._snapshot

    @staticmethod
    def evaluate(flag: FlagDefinition, ctx: EvaluationContext) -> Decision:
        if not flag.allows_environment(ctx.environment):
            return Decision(enabled=False, reason=DecisionReason.ENVIRONMENT_MISMATCH)

        bucket = compute_bucket(ctx.user_id, flag.key) if ctx.user_id else None

        if ctx.user_id and ctx.user_id in flag.explicit_user_ids:
            reason, enabled = DecisionReason.EXPLICIT_USER, True
        elif ctx.segments & flag.user_segments:
            reason, enabled = DecisionReason.SEGMENT_MATCH, True
        elif flag.rollout_percentage > 0 and bucket is not None:
            reason, enabled = DecisionReason.PERCENTAGE_ROLLOUT, bucket < flag.rollout_percentage
        else:
            reason, enabled = DecisionReason.STATIC_DEFAULT, flag.enabled

        variant = None
        if enabled and flag.variants:
            variant = select_variant(flag.variants, bucket if bucket is not None else 0)
        return Decision(enabled=enabled, reason=reason, variant=variant, bucket=bucket)

    def evaluate_key(self, key: str, ctx: EvaluationContext) -> Decision:
        """Evaluate a flag by key; unknown keys are disabled."""
        flag = self._snapshot.get(key)
        if flag is None:
            logger.debug(f"Flag {key} not found, returning disabled", extra={"flag_key": key})
            decision = Decision(enabled=False, reason=DecisionReason.FLAG_NOT_FOUND)
        else:
            decision = self.evaluate(flag, ctx)
        flag_evaluations_total.labels(
            flag=key if flag is not None else UNKNOWN_FLAG_LABEL,
            enabled=str(decision.enabled).lower(),
            reason=decision.reason.value,
        ).inc()
        return decision

    def is_enabled(self, key: str, ctx: EvaluationContext) -> bool:
        return self.evaluate_key(key, ctx).enabled
