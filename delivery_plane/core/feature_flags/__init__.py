"""Feature flag evaluation.

Provides:
- Deterministic percentage rollouts (stable user buckets)
- Environment, allow-list and segment targeting
- Weighted variants
- Validated JSON/YAML flag documents with copy-on-write snapshots
"""

from delivery_plane.core.feature_flags.engine import (
    FlagEvaluationEngine,
    compute_bucket,
    select_variant,
)
from delivery_plane.core.feature_flags.loader import (
    FlagRecord,
    dump_flags,
    load_flags,
    parse_flag_document,
)
from delivery_plane.core.feature_flags.models import (
    ANY_ENVIRONMENT,
    Decision,
    DecisionReason,
    EvaluationContext,
    FlagDefinition,
    FlagSnapshot,
)
from delivery_plane.core.feature_flags.store import FlagStore

__all__ = [
    "ANY_ENVIRONMENT",
    "Decision",
    "DecisionReason",
    "EvaluationContext",
    "FlagDefinition",
    "FlagEvaluationEngine",
    "FlagRecord",
    "FlagSnapshot",
    "FlagStore",
    "compute_bucket",
    "dump_flags",
    "load_flags",
    "parse_flag_document",
    "select_variant",
]
