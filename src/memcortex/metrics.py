"""Token-usage and quality snapshots of the active memory set.

Both calculators scan a bounded sample of active (non-archived) memories so
a single scheduler tick stays cheap on large stores.  Confidence figures use
decayed confidence, which is how decay feeds trigger evaluation; the trend
compares stored confidence so that age alone does not read as improvement.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from memcortex.compression import estimate_tokens
from memcortex.config import SchedulerConfig, get_config
from memcortex.decay import decayed_confidence
from memcortex.memory import EPHEMERAL_TYPES, MemoryQuery, MemoryStore, days_between, parse_timestamp

log = logging.getLogger(__name__)

_EPHEMERAL_REDUCTION = 0.7
_ARCHIVABLE_CONFIDENCE = 0.3
_LOW_CONFIDENCE = 0.5
_TREND_BAND = 0.05
_RECENT_DAYS = 7
_STALE_DAYS = 30

DENSITY_SOURCES: tuple[str, ...] = ("approximate", "graph")


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------


@dataclass
class TokenUsage:
    """Estimated token footprint of the active memory set."""

    total_tokens: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    by_age: dict[str, int] = field(
        default_factory=lambda: {"last_24h": 0, "last_7d": 0, "last_30d": 0, "older": 0}
    )
    compression_potential: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_tokens": self.total_tokens,
            "by_type": dict(self.by_type),
            "by_age": dict(self.by_age),
            "compression_potential": round(self.compression_potential, 2),
        }


@dataclass
class QualityMetrics:
    """Health indicators of the active memory set.

    The defaults are the neutral snapshot reported for an empty store.
    """

    avg_confidence: float = 1.0
    confidence_trend: str = "stable"
    contradiction_density: float = 0.0
    stale_memory_ratio: float = 0.0
    orphan_memory_ratio: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "avg_confidence": round(self.avg_confidence, 4),
            "confidence_trend": self.confidence_trend,
            "contradiction_density": round(self.contradiction_density, 2),
            "stale_memory_ratio": round(self.stale_memory_ratio, 4),
            "orphan_memory_ratio": round(self.orphan_memory_ratio, 4),
        }


@dataclass
class MetricsSnapshot:
    """Everything the trigger evaluator needs for one tick."""

    tokens: TokenUsage
    quality: QualityMetrics
    memory_count: int
    computed_at: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "tokens": self.tokens.to_dict(),
            "quality": self.quality.to_dict(),
            "memory_count": self.memory_count,
            "computed_at": self.computed_at,
        }


# ---------------------------------------------------------------------------
# Calculator
# ---------------------------------------------------------------------------


class MetricsCalculator:
    """Computes :class:`TokenUsage` and :class:`QualityMetrics` from a store.

    Parameters
    ----------
    memories:
        The memory store to scan.
    config:
        Scheduler settings (sample sizes and the contradiction density
        source).  Defaults to the global configuration.
    """

    def __init__(self, memories: MemoryStore, config: SchedulerConfig | None = None) -> None:
        self._memories = memories
        self._cfg = config or get_config().scheduler
        if self._cfg.contradiction_density_source not in DENSITY_SOURCES:
            raise ValueError(
                f"Invalid contradiction_density_source {self._cfg.contradiction_density_source!r}. "
                f"Must be one of: {', '.join(DENSITY_SOURCES)}"
            )

    async def snapshot(self, now: datetime | None = None) -> MetricsSnapshot:
        now = now or datetime.now(tz=timezone.utc)
        tokens = await self.token_usage(now)
        quality = await self.quality_metrics(now)
        count = await self._memories.count()
        return MetricsSnapshot(
            tokens=tokens,
            quality=quality,
            memory_count=count,
            computed_at=now.isoformat(),
        )

    async def token_usage(self, now: datetime | None = None) -> TokenUsage:
        """Bucket the sampled memories' token estimates by type and age.

        Compression potential counts 70% of every ephemeral memory and all
        of any memory whose decayed confidence is below 0.3.
        """
        now = now or datetime.now(tz=timezone.utc)
        memories = await self._memories.search(MemoryQuery(), limit=self._cfg.token_sample_size)
        usage = TokenUsage()

        for memory in memories:
            tokens = estimate_tokens(memory)
            usage.total_tokens += tokens
            usage.by_type[memory.type] = usage.by_type.get(memory.type, 0) + tokens

            created = parse_timestamp(memory.created_at)
            age = days_between(created, now) if created else float("inf")
            if age < 1:
                usage.by_age["last_24h"] += tokens
            elif age < 7:
                usage.by_age["last_7d"] += tokens
            elif age < 30:
                usage.by_age["last_30d"] += tokens
            else:
                usage.by_age["older"] += tokens

            if memory.type in EPHEMERAL_TYPES:
                usage.compression_potential += tokens * _EPHEMERAL_REDUCTION
            elif decayed_confidence(memory, now) < _ARCHIVABLE_CONFIDENCE:
                usage.compression_potential += tokens

        return usage

    async def quality_metrics(self, now: datetime | None = None) -> QualityMetrics:
        """Average confidence, trend, contradiction density and ratios.

        Returns the neutral snapshot when the store holds no active memories.
        """
        now = now or datetime.now(tz=timezone.utc)
        memories = await self._memories.search(MemoryQuery(), limit=self._cfg.quality_sample_size)
        if not memories:
            return QualityMetrics()

        total = len(memories)
        decayed = [decayed_confidence(m, now) for m in memories]
        avg_confidence = sum(decayed) / total

        recent_cutoff = now - timedelta(days=_RECENT_DAYS)
        recent: list[float] = []
        older: list[float] = []
        for memory in memories:
            created = parse_timestamp(memory.created_at)
            (recent if created and created >= recent_cutoff else older).append(memory.confidence)
        stored_avg = sum(m.confidence for m in memories) / total
        recent_avg = sum(recent) / len(recent) if recent else stored_avg
        older_avg = sum(older) / len(older) if older else stored_avg
        if recent_avg > older_avg + _TREND_BAND:
            trend = "improving"
        elif recent_avg < older_avg - _TREND_BAND:
            trend = "degrading"
        else:
            trend = "stable"

        if self._cfg.contradiction_density_source == "graph":
            density = await self._graph_density()
        else:
            low = sum(1 for c in decayed if c < _LOW_CONFIDENCE)
            density = low / total * 100

        stale_cutoff = now - timedelta(days=_STALE_DAYS)
        stale = 0
        for memory in memories:
            accessed = parse_timestamp(memory.last_accessed)
            if accessed is None or accessed < stale_cutoff:
                stale += 1
        orphans = sum(1 for m in memories if m.is_orphan)

        return QualityMetrics(
            avg_confidence=avg_confidence,
            confidence_trend=trend,
            contradiction_density=density,
            stale_memory_ratio=stale / total,
            orphan_memory_ratio=orphans / total,
        )

    async def _graph_density(self) -> float:
        """Unresolved contradictions between active memories, per 100 memories."""
        storage = self._memories.storage
        rows = await storage.execute(
            """
            SELECT COUNT(*) AS cnt FROM memory_contradictions c
            JOIN memories a ON a.id = c.memory_id AND a.archived = 0
            JOIN memories b ON b.id = c.existing_memory_id AND b.archived = 0
            WHERE c.resolution_status = 'pending'
            """
        )
        pending = int(rows[0]["cnt"])
        active = await self._memories.count()
        if active == 0:
            return 0.0
        return pending / active * 100
