"""Central configuration for the memcortex lifecycle engine.

All tunables live here with sensible defaults.  Values can be overridden
through environment variables prefixed with ``MEMCORTEX_`` (nested keys use
double underscores, e.g. ``MEMCORTEX_SCHEDULER__TOKEN_BUDGET=50000``).

Tuple-valued fields accept a comma-separated list, e.g.
``MEMCORTEX_CONTRADICTION__CHECK_TYPES=tribal,semantic``.

Usage::

    from memcortex.config import get_config

    cfg = get_config()
    print(cfg.scheduler.token_budget)
    print(cfg.retrieval.weights.confidence)
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TypeVar, get_args, get_origin, get_type_hints

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Nested configuration sections
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SchedulerConfig:
    """Thresholds for the adaptive consolidation scheduler.

    ``contradiction_density_source`` selects how contradiction density is
    measured: ``"approximate"`` counts memories whose confidence sits below
    0.5, ``"graph"`` counts unresolved rows in the contradiction ledger.
    The graph source is exact but costs an extra query per tick and reacts
    only to contradictions that were actually detected.
    """

    enabled: bool = True
    fallback_interval_hours: float = 24.0
    token_budget: int = 100_000
    token_pressure_threshold: float = 0.8
    max_memory_count: int = 500
    min_avg_confidence: float = 0.5
    max_contradiction_density: float = 10.0
    check_interval_minutes: float = 30.0
    contradiction_density_source: str = "approximate"
    token_sample_size: int = 10_000
    quality_sample_size: int = 1_000


@dataclass(frozen=True, slots=True)
class ConsolidationConfig:
    """Parameters for scope-bounded consolidation runs."""

    conservative_limit: int = 10
    """Maximum actions a conservative run may take."""
    moderate_limit: int = 50
    """Maximum actions a moderate run may take."""
    merge_min_group: int = 3
    """Same-type memories sharing a topic must number at least this many to merge."""
    compress_min_age_days: int = 14
    """Memories younger than this are never compressed."""
    scan_limit: int = 2_000
    """Upper bound on candidates loaded per run."""


@dataclass(frozen=True, slots=True)
class ContradictionConfig:
    """Detector thresholds for similarity-based contradiction finding."""

    min_similarity: float = 0.6
    min_confidence: float = 0.5
    max_candidates: int = 50
    check_types: tuple[str, ...] = (
        "tribal",
        "semantic",
        "procedural",
        "pattern_rationale",
        "decision_context",
        "feedback",
        "skill",
        "workflow",
    )


@dataclass(frozen=True, slots=True)
class PropagationRules:
    """Deltas and thresholds applied by the confidence propagator."""

    direct_contradiction_delta: float = -0.3
    partial_contradiction_delta: float = -0.15
    supersession_delta: float = -0.5
    confirmation_delta: float = 0.1
    supporting_propagation_factor: float = 0.5
    archival_threshold: float = 0.15
    consensus_threshold: int = 3
    consensus_boost: float = 0.2
    max_depth: int = 3
    """Cascade hops followed from the directly contradicted memory."""


@dataclass(frozen=True, slots=True)
class FeedbackConfig:
    """Confidence steps for explicit user feedback."""

    confirm_delta: float = 0.1
    confirm_cap: float = 1.0
    reject_delta: float = -0.3
    reject_floor: float = 0.1
    modify_delta: float = -0.1
    modify_floor: float = 0.3
    explicit_contradiction_confidence: float = 0.9
    explicit_contradiction_similarity: float = 0.8


@dataclass(frozen=True, slots=True)
class RetrievalWeights:
    """Relative weights for the base retrieval score.

    All weights should sum to approximately 1.0 for normalised scoring.
    """

    relevance: float = 0.40
    recency: float = 0.15
    confidence: float = 0.30
    importance: float = 0.15


@dataclass(frozen=True, slots=True)
class RetrievalConfig:
    """Parameters that govern intent-weighted retrieval."""

    default_budget_tokens: int = 2_000
    candidate_limit: int = 500
    recency_window_days: int = 90  # recency decays linearly to the floor over this window
    recency_floor: float = 0.1
    weights: RetrievalWeights = field(default_factory=RetrievalWeights)


# ---------------------------------------------------------------------------
# Top-level configuration
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CortexConfig:
    """Root configuration object for memcortex.

    All paths are stored as resolved :class:`~pathlib.Path` instances with
    ``~`` expanded.
    """

    db_path: Path = field(default_factory=lambda: Path("~/.memcortex/cortex.db"))
    backup_dir: Path = field(default_factory=lambda: Path("~/.memcortex/backups"))
    backup_count: int = 5
    embedding_dims: int = 768

    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    consolidation: ConsolidationConfig = field(default_factory=ConsolidationConfig)
    contradiction: ContradictionConfig = field(default_factory=ContradictionConfig)
    propagation: PropagationRules = field(default_factory=PropagationRules)
    feedback: FeedbackConfig = field(default_factory=FeedbackConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)

    def __post_init__(self) -> None:
        # Frozen dataclass: expand ~ through object.__setattr__.
        object.__setattr__(self, "db_path", Path(self.db_path).expanduser())
        object.__setattr__(self, "backup_dir", Path(self.backup_dir).expanduser())


# ---------------------------------------------------------------------------
# Environment-variable loader
# ---------------------------------------------------------------------------

_ENV_PREFIX = "MEMCORTEX_"
_NESTED_SEP = "__"


def _resolve_type_hints(dc_type: type) -> dict[str, type]:
    """Resolve stringified annotations back to real types.

    ``from __future__ import annotations`` turns all annotations into
    strings.  :func:`typing.get_type_hints` evaluates them in the correct
    module namespace so we get the actual :class:`type` objects.
    """
    module = sys.modules.get(dc_type.__module__, None)
    globalns = getattr(module, "__dict__", {}) if module else {}
    return get_type_hints(dc_type, globalns=globalns)


def _coerce(value: str, target_type: type[T]) -> T:
    """Cast an env-var string to the target field type."""
    if get_origin(target_type) is tuple:
        (item_type, *_rest) = get_args(target_type) or (str,)
        items = [part.strip() for part in value.split(",") if part.strip()]
        return tuple(_coerce(item, item_type) for item in items)  # type: ignore[return-value]
    if target_type is bool:
        return target_type(value.lower() in ("1", "true", "yes"))  # type: ignore[return-value]
    return target_type(value)  # type: ignore[call-arg]


def _load_dataclass(dc_type: type[T], prefix: str) -> T:
    """Recursively build a dataclass from env-var overrides + defaults."""
    hints = _resolve_type_hints(dc_type)
    kwargs: dict[str, object] = {}

    for f in fields(dc_type):  # type: ignore[arg-type]
        field_type = hints[f.name]
        nested_prefix = f"{prefix}{f.name}{_NESTED_SEP}".upper()

        if hasattr(field_type, "__dataclass_fields__"):
            kwargs[f.name] = _load_dataclass(field_type, nested_prefix)
        else:
            env_key = f"{prefix}{f.name}".upper()
            raw = os.environ.get(env_key)
            if raw is not None:
                kwargs[f.name] = _coerce(raw, field_type)

    return dc_type(**kwargs)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

_cached_config: CortexConfig | None = None


def get_config(*, reload: bool = False) -> CortexConfig:
    """Return the current :class:`CortexConfig`.

    On the first call the config is built by merging defaults with any
    ``MEMCORTEX_*`` environment variables.  The result is cached for the
    lifetime of the process unless *reload* is ``True``.

    Parameters
    ----------
    reload:
        Force re-reading environment variables and rebuilding the config.
    """
    global _cached_config  # noqa: PLW0603
    if _cached_config is None or reload:
        _cached_config = _load_dataclass(CortexConfig, _ENV_PREFIX)
    return _cached_config
