"""Tests for feature flag evaluation."""

import hashlib

import pytest
from prometheus_client import REGISTRY

from delivery_plane.core.feature_flags import (
    Decision,
    DecisionReason,
    EvaluationContext,
    FlagDefinition,
    FlagEvaluationEngine,
    FlagSnapshot,
    compute_bucket,
    select_variant,
)
from delivery_plane.core.feature_flags.engine import UNKNOWN_FLAG_LABEL


def _flag(**kwargs) -> FlagDefinition:
    data = {"key": "test-flag", "allowed_environments": ["production"]}
    data.update(kwargs)
    return FlagDefinition.from_dict(data)


class TestComputeBucket:
    """Tests for the rollout bucket."""

    def test_bucket_in_range(self):
        """Buckets always fall in [0, 100)."""
        for i in range(200):
            assert 0 <= compute_bucket(f"user{i}", "flag") < 100

    def test_bucket_matches_md5_prefix(self):
        """Bucket is the first 32 bits of md5(user_id + key) mod 100."""
        digest = hashlib.md5("user1new-checkout".encode("utf-8")).hexdigest()
        assert compute_bucket("user1", "new-checkout") == int(digest[:8], 16) % 100

    def test_bucket_is_deterministic(self):
        assert compute_bucket("user42", "flag-a") == compute_bucket("user42", "flag-a")

    def test_bucket_depends_on_flag_key(self):
        """Different flags spread the same users differently."""
        same = sum(
            1 for i in range(500) if compute_bucket(f"user{i}", "flag-a") == compute_bucket(f"user{i}", "flag-b")
        )
        assert same < 50


class TestSelectVariant:
    """Tests for weighted variant selection."""

    def test_cumulative_ranges(self):
        variants = (("control", 50), ("treatment", 30), ("holdout", 20))
        assert select_variant(variants, 0) == "control"
        assert select_variant(variants, 49) == "control"
        assert select_variant(variants, 50) == "treatment"
        assert select_variant(variants, 79) == "treatment"
        assert select_variant(variants, 80) == "holdout"
        assert select_variant(variants, 99) == "holdout"

    def test_weights_not_summing_to_100(self):
        assert select_variant((("a", 50), ("b", 40)), 10) is None

    def test_zero_weight_variant_never_selected(self):
        variants = (("a", 0), ("b", 100))
        assert {select_variant(variants, b) for b in range(100)} == {"b"}


class TestEvaluate:
    """Tests for the evaluation rule order."""

    def test_environment_mismatch(self):
        """Environment gate applies before everything else."""
        flag = _flag(enabled=True)
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("staging", user_id="u1"))
        assert decision.enabled is False
        assert decision.reason == DecisionReason.ENVIRONMENT_MISMATCH

    def test_environment_mismatch_beats_allow_list(self):
        """An allow-listed user is still disabled outside allowed environments."""
        flag = _flag(explicit_user_ids=["vip"])
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("staging", user_id="vip"))
        assert decision.enabled is False
        assert decision.reason == DecisionReason.ENVIRONMENT_MISMATCH

    def test_empty_environments_disable_everywhere(self):
        flag = _flag(enabled=True, allowed_environments=[])
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production"))
        assert decision.reason == DecisionReason.ENVIRONMENT_MISMATCH

    def test_wildcard_environment(self):
        flag = _flag(enabled=True, allowed_environments=["*"])
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("anything"))
        assert decision.enabled is True
        assert decision.reason == DecisionReason.STATIC_DEFAULT

    def test_explicit_user_beats_rollout(self):
        """Allow-listed users are enabled even at 0% rollout."""
        flag = _flag(explicit_user_ids=["vip"], rollout_percentage=0)
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production", user_id="vip"))
        assert decision.enabled is True
        assert decision.reason == DecisionReason.EXPLICIT_USER

    def test_segment_match(self):
        flag = _flag(user_segments=["beta", "staff"])
        ctx = EvaluationContext.build("production", user_id="u1", segments=["staff"])
        decision = FlagEvaluationEngine.evaluate(flag, ctx)
        assert decision.enabled is True
        assert decision.reason == DecisionReason.SEGMENT_MATCH

    def test_segment_match_without_user_id(self):
        flag = _flag(user_segments=["beta"])
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production", segments=["beta"]))
        assert decision.enabled is True
        assert decision.bucket is None

    def test_percentage_rollout_uses_bucket(self):
        flag = _flag(rollout_percentage=40)
        for i in range(50):
            user = f"user{i}"
            decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production", user_id=user))
            assert decision.reason == DecisionReason.PERCENTAGE_ROLLOUT
            assert decision.bucket == compute_bucket(user, "test-flag")
            assert decision.enabled is (decision.bucket < 40)

    def test_rollout_without_user_falls_to_static_default(self):
        """Requests without a user id skip the percentage rule."""
        flag = _flag(rollout_percentage=50, enabled=True)
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production"))
        assert decision.enabled is True
        assert decision.reason == DecisionReason.STATIC_DEFAULT

    def test_static_default(self):
        flag = _flag(enabled=False)
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production", user_id="u1"))
        assert decision == Decision(
            enabled=False,
            reason=DecisionReason.STATIC_DEFAULT,
            bucket=compute_bucket("u1", "test-flag"),
        )

    def test_full_rollout_enables_everyone(self):
        flag = _flag(rollout_percentage=100)
        assert all(
            FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production", user_id=f"u{i}")).enabled
            for i in range(200)
        )

    def test_variant_assigned_when_enabled(self):
        flag = _flag(enabled=True, variants={"control": 50, "treatment": 50})
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production", user_id="u7"))
        expected = "control" if compute_bucket("u7", "test-flag") < 50 else "treatment"
        assert decision.variant == expected

    def test_variant_without_user_uses_bucket_zero(self):
        flag = _flag(enabled=True, variants={"control": 10, "treatment": 90})
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production"))
        assert decision.variant == "control"

    def test_no_variant_when_disabled(self):
        flag = _flag(enabled=False, variants={"control": 50, "treatment": 50})
        decision = FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production", user_id="u1"))
        assert decision.enabled is False
        assert decision.variant is None


class TestDeterminismAndUniformity:
    """Statistical properties of percentage rollouts."""

    def test_same_inputs_same_decision(self):
        flag = _flag(rollout_percentage=37, variants={"a": 33, "b": 33, "c": 34})
        ctx = EvaluationContext.build("production", user_id="user-123", segments=["x"])
        first = FlagEvaluationEngine.evaluate(flag, ctx)
        for _ in range(20):
            assert FlagEvaluationEngine.evaluate(flag, ctx) == first

    @pytest.mark.parametrize("percentage", [10, 30, 75])
    def test_rollout_fraction_is_close_to_percentage(self, percentage):
        flag = _flag(rollout_percentage=percentage)
        total = 10000
        enabled = sum(
            1
            for i in range(total)
            if FlagEvaluationEngine.evaluate(flag, EvaluationContext.build("production", user_id=f"user-{i}")).enabled
        )
        assert abs(enabled / total - percentage / 100) < 0.03

    def test_raising_percentage_keeps_enabled_users(self):
        """A user enabled at 20% stays enabled at 50%."""
        low = _flag(rollout_percentage=20)
        high = _flag(rollout_percentage=50)
        for i in range(500):
            ctx = EvaluationContext.build("production", user_id=f"user-{i}")
            if FlagEvaluationEngine.evaluate(low, ctx).enabled:
                assert FlagEvaluationEngine.evaluate(high, ctx).enabled


class TestFlagEvaluationEngine:
    """Tests for snapshot-backed evaluation."""

    def test_unknown_flag(self):
        engine = FlagEvaluationEngine(FlagSnapshot([_flag()], version=1))
        decision = engine.evaluate_key("missing", EvaluationContext.build("production"))
        assert decision.enabled is False
        assert decision.reason == DecisionReason.FLAG_NOT_FOUND

    def test_is_enabled(self):
        engine = FlagEvaluationEngine(FlagSnapshot([_flag(enabled=True)], version=1))
        assert engine.is_enabled("test-flag", EvaluationContext.build("production")) is True
        assert engine.is_enabled("test-flag", EvaluationContext.build("dev")) is False

    def test_empty_engine(self):
        engine = FlagEvaluationEngine()
        assert engine.snapshot.version == 0
        assert engine.is_enabled("anything", EvaluationContext.build("production")) is False


class TestFlagSnapshot:
    """Tests for copy-on-write snapshots."""

    def test_replace_returns_new_version(self):
        original = FlagSnapshot([_flag(enabled=False)], version=3)
        updated = original.replace(_flag(enabled=True))
        assert updated.version == 4
        assert updated.get("test-flag").enabled is True
        assert original.get("test-flag").enabled is False

    def test_flags_mapping_is_read_only(self):
        snapshot = FlagSnapshot([_flag()], version=1)
        with pytest.raises(TypeError):
            snapshot.flags["other"] = _flag(key="other")  # type: ignore[index]

    def test_engine_keeps_its_snapshot(self):
        """An engine evaluating a snapshot is unaffected by later replacements."""
        snapshot = FlagSnapshot([_flag(enabled=False)], version=1)
        engine = FlagEvaluationEngine(snapshot)
        snapshot.replace(_flag(enabled=True))
        assert engine.is_enabled("test-flag", EvaluationContext.build("production")) is False

    def test_contains_and_len(self):
        snapshot = FlagSnapshot([_flag(), _flag(key="other")], version=1)
        assert "other" in snapshot
        assert "missing" not in snapshot
        assert len(snapshot) == 2


def _evaluations(flag: str) -> float:
    labels = {"flag": flag, "enabled": "false", "reason": DecisionReason.FLAG_NOT_FOUND.value}
    return REGISTRY.get_sample_value("delivery_flag_evaluations_total", labels) or 0.0


def test_unknown_flags_share_one_metric_series():
    """Arbitrary caller-supplied keys do not create new label values."""
    engine = FlagEvaluationEngine(FlagSnapshot([_flag()], version=1))
    before = _evaluations(UNKNOWN_FLAG_LABEL)
    for i in range(5):
        engine.evaluate_key(f"random-key-{i}", EvaluationContext.build("production"))
    assert _evaluations(UNKNOWN_FLAG_LABEL) == before + 5
    assert REGISTRY.get_sample_value(
        "delivery_flag_evaluations_total",
        {"flag": "random-key-0", "enabled": "false", "reason": DecisionReason.FLAG_NOT_FOUND.value},
    ) is None
