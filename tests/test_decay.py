"""Tests for confidence decay, archival eligibility and temporal validation."""

from __future__ import annotations

import math
from datetime import timedelta

import pytest

from memcortex.decay import (
    HALF_LIVES,
    MIN_CONFIDENCE,
    VALIDATION_THRESHOLDS,
    TemporalValidator,
    clamp,
    decay_anchor,
    decayed_confidence,
    half_life,
    is_archival_eligible,
)
from memcortex.memory import MEMORY_TYPES
from tests.conftest import NOW, days_ago, make_memory


class TestTables:
    def test_every_type_has_entries(self) -> None:
        for memory_type in MEMORY_TYPES:
            assert memory_type in HALF_LIVES
            assert memory_type in VALIDATION_THRESHOLDS
            assert memory_type in MIN_CONFIDENCE

    def test_tables_are_read_only(self) -> None:
        with pytest.raises(TypeError):
            HALF_LIVES["core"] = 1  # type: ignore[index]

    def test_core_never_decays(self) -> None:
        assert math.isinf(half_life("core"))

    def test_unknown_type_falls_back(self) -> None:
        assert half_life("nonexistent") == 90


class TestDecayedConfidence:
    def test_core_memory_keeps_confidence_after_1000_days(self) -> None:
        memory = make_memory(type="core", confidence=0.9, created_at=days_ago(1000, NOW))
        assert decayed_confidence(memory, NOW) == pytest.approx(0.9)

    def test_halves_after_one_half_life(self) -> None:
        memory = make_memory(type="semantic", confidence=0.8, created_at=days_ago(90, NOW))
        assert decayed_confidence(memory, NOW) == pytest.approx(0.4)

    def test_episodic_fades_quickly(self) -> None:
        memory = make_memory(type="episodic", confidence=1.0, created_at=days_ago(14, NOW))
        assert decayed_confidence(memory, NOW) == pytest.approx(0.25)

    def test_fresh_memory_is_undecayed(self) -> None:
        memory = make_memory(type="tribal", confidence=0.7, created_at=NOW.isoformat())
        assert decayed_confidence(memory, NOW) == pytest.approx(0.7)

    def test_last_validated_reanchors_decay(self) -> None:
        memory = make_memory(
            type="semantic",
            confidence=1.0,
            created_at=days_ago(365, NOW),
            last_validated=days_ago(0, NOW),
        )
        assert decay_anchor(memory) == NOW
        assert decayed_confidence(memory, NOW) == pytest.approx(1.0)

    def test_future_created_at_does_not_increase_confidence(self) -> None:
        memory = make_memory(
            type="semantic",
            confidence=0.6,
            created_at=(NOW + timedelta(days=10)).isoformat(),
        )
        assert decayed_confidence(memory, NOW) == pytest.approx(0.6)

    def test_unparseable_timestamp_returns_stored(self) -> None:
        memory = make_memory(type="semantic", confidence=0.5, created_at="not a date")
        assert decayed_confidence(memory, NOW) == pytest.approx(0.5)

    def test_result_is_bounded(self) -> None:
        memory = make_memory(type="episodic", confidence=1.0, created_at=days_ago(10_000, NOW))
        assert 0.0 <= decayed_confidence(memory, NOW) <= 1.0


class TestArchivalEligibility:
    def test_below_floor_is_eligible(self) -> None:
        memory = make_memory(type="episodic", confidence=1.0, created_at=days_ago(30, NOW))
        assert is_archival_eligible(memory, NOW)

    def test_above_floor_is_not_eligible(self) -> None:
        memory = make_memory(type="tribal", confidence=1.0, created_at=days_ago(30, NOW))
        assert not is_archival_eligible(memory, NOW)

    def test_core_is_never_eligible(self) -> None:
        memory = make_memory(type="core", confidence=0.0, created_at=days_ago(5000, NOW))
        assert not is_archival_eligible(memory, NOW)


class TestClamp:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [(-0.5, 0.0), (0.3, 0.3), (1.7, 1.0)],
    )
    def test_clamp(self, value: float, expected: float) -> None:
        assert clamp(value) == expected


class TestTemporalValidator:
    def test_fresh_memory_has_no_issues(self) -> None:
        memory = make_memory(type="semantic", created_at=NOW.isoformat())
        assert TemporalValidator().validate(memory, NOW) == []

    def test_unvalidated_memory_is_flagged(self) -> None:
        memory = make_memory(
            type="semantic",
            created_at=days_ago(45, NOW),
            last_accessed=days_ago(1, NOW),
        )
        issues = TemporalValidator().validate(memory, NOW)
        assert len(issues) == 1
        assert issues[0].dimension == "temporal"
        assert issues[0].severity == "minor"
        assert "45 days" in issues[0].description

    def test_long_overdue_validation_is_moderate(self) -> None:
        memory = make_memory(
            type="semantic",
            created_at=days_ago(61, NOW),
            last_accessed=days_ago(1, NOW),
        )
        issues = TemporalValidator().validate(memory, NOW)
        assert issues[0].severity == "moderate"

    def test_dormant_memory_is_flagged(self) -> None:
        memory = make_memory(
            type="reference",
            created_at=days_ago(100, NOW),
            last_validated=days_ago(1, NOW),
        )
        issues = TemporalValidator().validate(memory, NOW)
        assert [i.description for i in issues] == ["Memory not accessed in 100 days"]
        assert issues[0].suggestion == "Consider archiving if no longer relevant"

    def test_core_is_never_dormant(self) -> None:
        memory = make_memory(
            type="core",
            created_at=days_ago(300, NOW),
            last_validated=days_ago(1, NOW),
        )
        assert TemporalValidator().validate(memory, NOW) == []

    def test_issue_serialises(self) -> None:
        memory = make_memory(type="goal", created_at=days_ago(40, NOW), last_accessed=days_ago(1, NOW))
        issue = TemporalValidator().validate(memory, NOW)[0]
        assert set(issue.to_dict()) == {"dimension", "severity", "description", "suggestion"}
