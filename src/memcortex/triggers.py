"""Adaptive consolidation triggering.

:class:`TriggerEvaluator` turns a :class:`~memcortex.metrics.MetricsSnapshot`
into at most one :class:`ConsolidationTrigger`.  Five independent checks run
against the snapshot:

1. **Token pressure** -- estimated tokens against the token budget.
2. **Memory count** -- active memories against the count ceiling.
3. **Confidence degradation** -- average decayed confidence below a floor.
4. **Contradiction density** -- contradictions per 100 memories above a ceiling.
5. **Scheduled fallback** -- time since the last run beyond the interval.

Every firing check proposes a :class:`ConsolidationScope`.  The evaluator
returns only the most urgent trigger so that one consolidation pass
addresses the single worst condition at a time.  Ties keep check order.

The evaluator is pure: identical inputs always give identical output.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from memcortex.config import SchedulerConfig, get_config
from memcortex.memory import EPHEMERAL_TYPES, MEMORY_TYPES
from memcortex.metrics import MetricsSnapshot, QualityMetrics, TokenUsage

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

URGENCY_ORDER: dict[str, int] = {"critical": 0, "high": 1, "medium": 2, "low": 3}
"""Sort key per urgency; lower sorts first."""

TRIGGER_TYPES: tuple[str, ...] = (
    "scheduled",
    "token_pressure",
    "memory_count",
    "confidence_degradation",
    "contradiction_density",
    "context_cluster",
    "manual",
)

AGGRESSIVENESS_LEVELS: tuple[str, ...] = ("conservative", "moderate", "aggressive")

CONTRADICTION_PRONE_TYPES: tuple[str, ...] = ("tribal", "semantic", "feedback")

_TOKEN_TARGET_FRACTION = 0.7
"""Token-pressure runs aim to bring usage back to this fraction of budget."""

_TOKEN_PRESSURE_MIN_AGE_DAYS = 7
_DEGRADATION_MAX_CONFIDENCE = 0.4


# ---------------------------------------------------------------------------
# Scope and trigger
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ConsolidationScope:
    """Which memories a consolidation run may touch, and how hard.

    Parameters
    ----------
    memory_types:
        Restrict to these types.  ``None`` means every type.
    context_cluster:
        Restrict to memories tagged with this value or linked to files
        under this path prefix.
    min_age:
        Only memories at least this many days old.
    max_confidence:
        Only memories whose decayed confidence is at most this.
    aggressiveness:
        ``conservative``, ``moderate`` or ``aggressive``.
    target_token_reduction:
        Tokens an aggressive run tries to free before stopping.
    """

    memory_types: tuple[str, ...] | None = None
    context_cluster: str | None = None
    min_age: float | None = None
    max_confidence: float | None = None
    aggressiveness: str = "conservative"
    target_token_reduction: float | None = None

    def __post_init__(self) -> None:
        if self.aggressiveness not in AGGRESSIVENESS_LEVELS:
            raise ValueError(
                f"Invalid aggressiveness {self.aggressiveness!r}. "
                f"Must be one of: {', '.join(AGGRESSIVENESS_LEVELS)}"
            )
        if self.memory_types is not None:
            object.__setattr__(self, "memory_types", tuple(self.memory_types))
            unknown = [t for t in self.memory_types if t not in MEMORY_TYPES]
            if unknown:
                raise ValueError(f"Invalid memory type(s) in scope: {', '.join(unknown)}")
        if self.max_confidence is not None and not 0.0 <= self.max_confidence <= 1.0:
            raise ValueError(f"max_confidence must be in [0, 1], got {self.max_confidence}")
        if self.min_age is not None and self.min_age < 0:
            raise ValueError(f"min_age must be >= 0, got {self.min_age}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "memory_types": list(self.memory_types) if self.memory_types else None,
            "context_cluster": self.context_cluster,
            "min_age": self.min_age,
            "max_confidence": self.max_confidence,
            "aggressiveness": self.aggressiveness,
            "target_token_reduction": self.target_token_reduction,
        }


@dataclass(frozen=True, slots=True)
class ConsolidationTrigger:
    """A reason to consolidate now, with the scope it suggests."""

    type: str
    reason: str
    urgency: str
    metrics: dict[str, float] = field(default_factory=dict)
    suggested_scope: ConsolidationScope = field(default_factory=ConsolidationScope)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type,
            "reason": self.reason,
            "urgency": self.urgency,
            "metrics": dict(self.metrics),
            "suggested_scope": self.suggested_scope.to_dict(),
        }


def most_urgent(triggers: list[ConsolidationTrigger]) -> ConsolidationTrigger | None:
    """Head of *triggers* by urgency; earlier entries win ties."""
    if not triggers:
        return None
    return sorted(triggers, key=lambda t: URGENCY_ORDER.get(t.urgency, 3))[0]


def manual_trigger(
    scope: ConsolidationScope | None = None,
    reason: str = "Manual consolidation requested",
) -> ConsolidationTrigger:
    return ConsolidationTrigger(
        type="manual",
        reason=reason,
        urgency="high",
        suggested_scope=scope or ConsolidationScope(aggressiveness="moderate"),
    )


def context_cluster_trigger(cluster: str) -> ConsolidationTrigger:
    """Low-urgency trigger confined to one tag or file-path cluster."""
    return ConsolidationTrigger(
        type="context_cluster",
        reason=f"Consolidation requested for context cluster {cluster!r}",
        urgency="low",
        suggested_scope=ConsolidationScope(
            context_cluster=cluster,
            aggressiveness="conservative",
        ),
    )


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------


class TriggerEvaluator:
    """Evaluates the five trigger checks against a metrics snapshot.

    Parameters
    ----------
    config:
        Thresholds.  Defaults to the global scheduler configuration.
    """

    def __init__(self, config: SchedulerConfig | None = None) -> None:
        self._cfg = config or get_config().scheduler

    def evaluate(
        self,
        snapshot: MetricsSnapshot,
        last_run: datetime | None,
        now: datetime | None = None,
    ) -> ConsolidationTrigger | None:
        """Return the single most urgent trigger, or ``None``."""
        return most_urgent(self.evaluate_all(snapshot, last_run, now))

    def evaluate_all(
        self,
        snapshot: MetricsSnapshot,
        last_run: datetime | None,
        now: datetime | None = None,
    ) -> list[ConsolidationTrigger]:
        """Every firing trigger, in check order."""
        now = now or datetime.now(tz=timezone.utc)
        candidates = (
            self.check_token_pressure(snapshot.tokens),
            self.check_memory_count(snapshot.memory_count),
            self.check_confidence_degradation(snapshot.quality),
            self.check_contradiction_density(snapshot.quality),
            self.check_scheduled_fallback(last_run, now),
        )
        return [t for t in candidates if t is not None]

    # ------------------------------------------------------------------
    # Individual checks
    # ------------------------------------------------------------------

    def check_token_pressure(self, usage: TokenUsage) -> ConsolidationTrigger | None:
        budget = self._cfg.token_budget
        ratio = usage.total_tokens / budget if budget > 0 else 0.0
        if ratio < self._cfg.token_pressure_threshold:
            return None

        if ratio > 0.95:
            urgency = "critical"
        elif ratio > 0.9:
            urgency = "high"
        elif ratio > 0.85:
            urgency = "medium"
        else:
            urgency = "low"

        return ConsolidationTrigger(
            type="token_pressure",
            reason=f"Token usage at {round(ratio * 100)}% of budget",
            urgency=urgency,
            metrics={
                "total_tokens": usage.total_tokens,
                "budget": budget,
                "usage_ratio": ratio,
                "compression_potential": usage.compression_potential,
            },
            suggested_scope=ConsolidationScope(
                aggressiveness="aggressive" if urgency == "critical" else "moderate",
                target_token_reduction=usage.total_tokens - budget * _TOKEN_TARGET_FRACTION,
                min_age=_TOKEN_PRESSURE_MIN_AGE_DAYS,
            ),
        )

    def check_memory_count(self, count: int) -> ConsolidationTrigger | None:
        threshold = self._cfg.max_memory_count
        if count < threshold:
            return None

        ratio = count / threshold if threshold > 0 else float("inf")
        if ratio > 2:
            urgency = "high"
        elif ratio > 1.5:
            urgency = "medium"
        else:
            urgency = "low"

        return ConsolidationTrigger(
            type="memory_count",
            reason=f"Memory count ({count}) exceeds threshold ({threshold})",
            urgency=urgency,
            metrics={"count": count, "threshold": threshold, "ratio": ratio},
            suggested_scope=ConsolidationScope(
                aggressiveness="moderate",
                memory_types=EPHEMERAL_TYPES,
            ),
        )

    def check_confidence_degradation(self, quality: QualityMetrics) -> ConsolidationTrigger | None:
        avg = quality.avg_confidence
        if avg >= self._cfg.min_avg_confidence:
            return None

        if avg < 0.3:
            urgency = "high"
        elif avg < 0.4:
            urgency = "medium"
        else:
            urgency = "low"

        return ConsolidationTrigger(
            type="confidence_degradation",
            reason=f"Average confidence ({round(avg * 100)}%) below threshold",
            urgency=urgency,
            metrics={
                "avg_confidence": avg,
                "threshold": self._cfg.min_avg_confidence,
                "stale_ratio": quality.stale_memory_ratio,
            },
            suggested_scope=ConsolidationScope(
                aggressiveness="conservative",
                max_confidence=_DEGRADATION_MAX_CONFIDENCE,
            ),
        )

    def check_contradiction_density(self, quality: QualityMetrics) -> ConsolidationTrigger | None:
        density = quality.contradiction_density
        if density <= self._cfg.max_contradiction_density:
            return None

        return ConsolidationTrigger(
            type="contradiction_density",
            reason=f"High contradiction density ({density:.1f} per 100 memories)",
            urgency="high" if density > 20 else "medium",
            metrics={"density": density, "threshold": self._cfg.max_contradiction_density},
            suggested_scope=ConsolidationScope(
                aggressiveness="moderate",
                memory_types=CONTRADICTION_PRONE_TYPES,
            ),
        )

    def check_scheduled_fallback(
        self,
        last_run: datetime | None,
        now: datetime,
    ) -> ConsolidationTrigger | None:
        # No prior run: never fire on a cold start.
        if last_run is None:
            return None

        hours = (now - last_run).total_seconds() / 3600.0
        if hours < self._cfg.fallback_interval_hours:
            return None

        return ConsolidationTrigger(
            type="scheduled",
            reason=f"Scheduled consolidation ({round(hours)}h since last run)",
            urgency="low",
            metrics={"hours_since_last_run": hours, "interval": self._cfg.fallback_interval_hours},
            suggested_scope=ConsolidationScope(aggressiveness="conservative"),
        )
