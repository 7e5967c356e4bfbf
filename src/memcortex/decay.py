"""Confidence decay and temporal validation.

Each memory type has a fixed half-life: ``core`` memories never decay,
episodic interaction records fade within a week, and institutional knowledge
(tribal memories, incidents, agent configurations) keeps half its confidence
for a year.  Decay is computed at read time and never written back; the stored
confidence only changes through feedback, contradiction propagation and
consolidation.

The three lookup tables below are module constants.  Changing them is a
code change, not a data migration.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping

from memcortex.memory import Memory, days_between, parse_timestamp

# ---------------------------------------------------------------------------
# Lookup tables
# ---------------------------------------------------------------------------

HALF_LIVES: Mapping[str, float] = MappingProxyType({
    "core": math.inf,
    "tribal": 365,
    "procedural": 180,
    "semantic": 90,
    "episodic": 7,
    "decision": 180,
    "insight": 90,
    "reference": 60,
    "preference": 120,
    "pattern_rationale": 180,
    "constraint_override": 90,
    "decision_context": 180,
    "code_smell": 90,
    "agent_spawn": 365,
    "entity": 180,
    "goal": 90,
    "feedback": 120,
    "workflow": 180,
    "conversation": 30,
    "incident": 365,
    "meeting": 60,
    "skill": 180,
    "environment": 90,
})
"""Days for confidence to halve, per memory type."""

VALIDATION_THRESHOLDS: Mapping[str, int] = MappingProxyType({
    "core": 365,
    "tribal": 90,
    "procedural": 60,
    "semantic": 30,
    "episodic": 7,
    "decision": 90,
    "insight": 45,
    "reference": 30,
    "preference": 60,
    "pattern_rationale": 60,
    "constraint_override": 30,
    "decision_context": 90,
    "code_smell": 30,
    "agent_spawn": 90,
    "entity": 60,
    "goal": 30,
    "feedback": 45,
    "workflow": 60,
    "conversation": 14,
    "incident": 90,
    "meeting": 30,
    "skill": 60,
    "environment": 30,
})
"""Days since validation before a staleness issue is raised."""

MIN_CONFIDENCE: Mapping[str, float] = MappingProxyType({
    "core": 0.0,
    "tribal": 0.2,
    "procedural": 0.3,
    "semantic": 0.3,
    "episodic": 0.1,
    "decision": 0.2,
    "insight": 0.3,
    "reference": 0.2,
    "preference": 0.2,
    "pattern_rationale": 0.3,
    "constraint_override": 0.2,
    "decision_context": 0.3,
    "code_smell": 0.2,
    "agent_spawn": 0.3,
    "entity": 0.2,
    "goal": 0.2,
    "feedback": 0.2,
    "workflow": 0.3,
    "conversation": 0.1,
    "incident": 0.2,
    "meeting": 0.1,
    "skill": 0.2,
    "environment": 0.2,
})
"""Decayed confidence below which a memory becomes archival-eligible."""

_DEFAULT_HALF_LIFE = 90
_DEFAULT_VALIDATION_THRESHOLD = 30


def half_life(memory_type: str) -> float:
    return HALF_LIVES.get(memory_type, _DEFAULT_HALF_LIFE)


def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


# ---------------------------------------------------------------------------
# Decay
# ---------------------------------------------------------------------------


def decay_anchor(memory: Memory) -> datetime | None:
    """The later of ``created_at`` and ``last_validated``."""
    stamps = [
        ts
        for ts in (parse_timestamp(memory.created_at), parse_timestamp(memory.last_validated))
        if ts is not None
    ]
    return max(stamps) if stamps else None


def decayed_confidence(memory: Memory, now: datetime | None = None) -> float:
    """Time-adjusted confidence of *memory* at *now*.

    ``stored * 0.5 ** (age_days / half_life)`` where age runs from the last
    validation (or creation).  Memories with an infinite half-life return
    their stored confidence unchanged.  The result is clamped to ``[0, 1]``.
    """
    stored = clamp(memory.confidence)
    hl = half_life(memory.type)
    if math.isinf(hl):
        return stored
    anchor = decay_anchor(memory)
    if anchor is None:
        return stored
    age = days_between(anchor, now or datetime.now(tz=timezone.utc))
    return clamp(stored * 0.5 ** (age / hl))


def is_archival_eligible(memory: Memory, now: datetime | None = None) -> bool:
    """Decayed confidence below the type's floor.  Core memories never qualify."""
    if memory.type == "core":
        return False
    floor = MIN_CONFIDENCE.get(memory.type, 0.2)
    return decayed_confidence(memory, now) < floor


# ---------------------------------------------------------------------------
# Temporal validation
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    """A single freshness problem found by :class:`TemporalValidator`."""

    dimension: str
    severity: str
    description: str
    suggestion: str

    def to_dict(self) -> dict[str, str]:
        return {
            "dimension": self.dimension,
            "severity": self.severity,
            "description": self.description,
            "suggestion": self.suggestion,
        }


class TemporalValidator:
    """Flags memories that have gone unvalidated or unaccessed for too long.

    Stateless; every call depends only on the memory and ``now``.
    """

    def validate(self, memory: Memory, now: datetime | None = None) -> list[ValidationIssue]:
        """Return staleness and dormancy issues for *memory*.

        Parameters
        ----------
        memory:
            The memory to check.
        now:
            Reference time; defaults to the current UTC time.

        Returns
        -------
        list[ValidationIssue]
            Empty when the memory is fresh.
        """
        now = now or datetime.now(tz=timezone.utc)
        issues: list[ValidationIssue] = []

        since_validation = self._days_since(memory.last_validated or memory.created_at, now)
        since_access = self._days_since(memory.last_accessed or memory.created_at, now)

        threshold = VALIDATION_THRESHOLDS.get(memory.type, _DEFAULT_VALIDATION_THRESHOLD)
        hl = half_life(memory.type)

        if since_validation > threshold:
            issues.append(
                ValidationIssue(
                    dimension="temporal",
                    severity="moderate" if since_validation > threshold * 2 else "minor",
                    description=f"Memory not validated in {since_validation} days",
                    suggestion="Re-validate against current codebase",
                )
            )

        if not math.isinf(hl) and since_access > hl:
            issues.append(
                ValidationIssue(
                    dimension="temporal",
                    severity="minor",
                    description=f"Memory not accessed in {since_access} days",
                    suggestion="Consider archiving if no longer relevant",
                )
            )

        return issues

    @staticmethod
    def _days_since(stamp: str | None, now: datetime) -> int:
        parsed = parse_timestamp(stamp)
        if parsed is None:
            return 0
        return math.floor(days_between(parsed, now))
