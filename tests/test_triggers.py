"""Tests for the adaptive trigger evaluator."""

from __future__ import annotations

from datetime import timedelta

import pytest

from memcortex.config import SchedulerConfig
from memcortex.metrics import MetricsSnapshot, QualityMetrics, TokenUsage
from memcortex.triggers import (
    ConsolidationScope,
    ConsolidationTrigger,
    TriggerEvaluator,
    context_cluster_trigger,
    manual_trigger,
    most_urgent,
)
from tests.conftest import NOW


def snapshot(
    total_tokens: int = 0,
    memory_count: int = 10,
    avg_confidence: float = 1.0,
    contradiction_density: float = 0.0,
) -> MetricsSnapshot:
    return MetricsSnapshot(
        tokens=TokenUsage(total_tokens=total_tokens),
        quality=QualityMetrics(
            avg_confidence=avg_confidence,
            contradiction_density=contradiction_density,
        ),
        memory_count=memory_count,
        computed_at=NOW.isoformat(),
    )


@pytest.fixture
def evaluator() -> TriggerEvaluator:
    return TriggerEvaluator(SchedulerConfig())


class TestTokenPressure:
    def test_below_threshold(self, evaluator: TriggerEvaluator) -> None:
        assert evaluator.evaluate(snapshot(total_tokens=79_000), None, NOW) is None

    def test_critical_pressure_is_aggressive(self, evaluator: TriggerEvaluator) -> None:
        trigger = evaluator.evaluate(snapshot(total_tokens=96_000), None, NOW)
        assert trigger is not None
        assert trigger.type == "token_pressure"
        assert trigger.urgency == "critical"
        assert trigger.suggested_scope.aggressiveness == "aggressive"
        assert trigger.suggested_scope.min_age == 7
        assert trigger.suggested_scope.target_token_reduction == pytest.approx(26_000)

    @pytest.mark.parametrize(
        ("tokens", "urgency"),
        [(82_000, "low"), (86_000, "medium"), (91_000, "high")],
    )
    def test_urgency_bands(self, evaluator: TriggerEvaluator, tokens: int, urgency: str) -> None:
        trigger = evaluator.check_token_pressure(TokenUsage(total_tokens=tokens))
        assert trigger is not None
        assert trigger.urgency == urgency
        assert trigger.suggested_scope.aggressiveness == "moderate"


class TestOtherChecks:
    def test_memory_count_targets_ephemeral_types(self, evaluator: TriggerEvaluator) -> None:
        trigger = evaluator.check_memory_count(1_100)
        assert trigger is not None
        assert trigger.urgency == "high"
        assert trigger.suggested_scope.memory_types == ("episodic", "conversation")

    def test_memory_count_below_threshold(self, evaluator: TriggerEvaluator) -> None:
        assert evaluator.check_memory_count(499) is None

    def test_confidence_degradation(self, evaluator: TriggerEvaluator) -> None:
        trigger = evaluator.check_confidence_degradation(QualityMetrics(avg_confidence=0.35))
        assert trigger is not None
        assert trigger.urgency == "medium"
        assert trigger.suggested_scope.max_confidence == 0.4
        assert trigger.suggested_scope.aggressiveness == "conservative"

    def test_contradiction_density(self, evaluator: TriggerEvaluator) -> None:
        trigger = evaluator.check_contradiction_density(QualityMetrics(contradiction_density=25))
        assert trigger is not None
        assert trigger.urgency == "high"
        assert "tribal" in trigger.suggested_scope.memory_types

    def test_density_at_threshold_does_not_fire(self, evaluator: TriggerEvaluator) -> None:
        assert evaluator.check_contradiction_density(QualityMetrics(contradiction_density=10)) is None


class TestScheduledFallback:
    def test_cold_start_never_fires(self, evaluator: TriggerEvaluator) -> None:
        assert evaluator.check_scheduled_fallback(None, NOW) is None

    def test_fires_after_interval(self, evaluator: TriggerEvaluator) -> None:
        trigger = evaluator.check_scheduled_fallback(NOW - timedelta(hours=25), NOW)
        assert trigger is not None
        assert trigger.type == "scheduled"
        assert trigger.urgency == "low"

    def test_recent_run_suppresses(self, evaluator: TriggerEvaluator) -> None:
        assert evaluator.check_scheduled_fallback(NOW - timedelta(hours=2), NOW) is None


class TestSelection:
    def test_most_urgent_wins(self, evaluator: TriggerEvaluator) -> None:
        snap = snapshot(total_tokens=96_000, memory_count=600, avg_confidence=0.45)
        triggers = evaluator.evaluate_all(snap, NOW - timedelta(days=3), NOW)
        assert [t.type for t in triggers] == [
            "token_pressure",
            "memory_count",
            "confidence_degradation",
            "scheduled",
        ]
        assert evaluator.evaluate(snap, NOW - timedelta(days=3), NOW).type == "token_pressure"

    def test_ties_keep_check_order(self) -> None:
        first = ConsolidationTrigger(type="memory_count", reason="", urgency="low")
        second = ConsolidationTrigger(type="scheduled", reason="", urgency="low")
        assert most_urgent([first, second]) is first
        assert most_urgent([]) is None

    def test_evaluation_is_pure(self, evaluator: TriggerEvaluator) -> None:
        snap = snapshot(total_tokens=90_000)
        assert evaluator.evaluate(snap, None, NOW) == evaluator.evaluate(snap, None, NOW)


class TestScope:
    def test_rejects_unknown_aggressiveness(self) -> None:
        with pytest.raises(ValueError, match="aggressiveness"):
            ConsolidationScope(aggressiveness="reckless")

    def test_rejects_unknown_type(self) -> None:
        with pytest.raises(ValueError, match="memory type"):
            ConsolidationScope(memory_types=("gossip",))

    def test_rejects_out_of_range_confidence(self) -> None:
        with pytest.raises(ValueError):
            ConsolidationScope(max_confidence=1.5)

    def test_lists_become_tuples(self) -> None:
        scope = ConsolidationScope(memory_types=["tribal"])  # type: ignore[arg-type]
        assert scope.memory_types == ("tribal",)
        assert scope.to_dict()["memory_types"] == ["tribal"]

    def test_manual_and_cluster_triggers(self) -> None:
        assert manual_trigger().suggested_scope.aggressiveness == "moderate"
        cluster = context_cluster_trigger("billing")
        assert cluster.type == "context_cluster"
        assert cluster.suggested_scope.context_cluster == "billing"
        assert cluster.to_dict()["suggested_scope"]["aggressiveness"] == "conservative"
