"""Intent-weighted retrieval of memories under a token budget.

The retrieval pipeline proceeds in three steps:

1. **Candidates** -- load active memories, minus any ids the caller has
   already seen in this session.
2. **Ranking** -- combine lexical relevance to the focus text, recency,
   decayed confidence and importance into a base score, then multiply by
   the (intent, memory type) weight.
3. **Budget fitting** -- walk the ranking and add memories, rendered at the
   requested compression level, until the next one would exceed the token
   budget.  A memory is never truncated.  If the top memory alone exceeds
   the budget it is still returned, by itself.

Retrieval reads inside the optional ``guard`` context the scheduler
provides, so a consolidation pass neither overlaps nor starts during its
search, rank and access-recording steps.  Retrievals still run
concurrently with each other.

Usage::

    from memcortex.retrieval import RetrievalEngine

    engine = RetrievalEngine(memories)
    result = await engine.retrieve("fix_bug", "payment webhook retries", budget_tokens=800)
    for item in result.memories:
        print(item.memory.type, round(item.score, 3), item.content)
"""

from __future__ import annotations

import logging
import re
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, AsyncContextManager, Callable, Iterable, Mapping

from memcortex.compression import LEVELS, HierarchicalCompressor, estimate_tokens
from memcortex.config import RetrievalConfig, get_config
from memcortex.decay import decayed_confidence
from memcortex.memory import Memory, MemoryQuery, MemoryStore, days_between, parse_timestamp

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Intents and weights
# ---------------------------------------------------------------------------

INTENTS: tuple[str, ...] = (
    "create",
    "investigate",
    "decide",
    "recall",
    "learn",
    "plan",
    "summarize",
    "add_feature",
    "fix_bug",
    "refactor",
    "security_audit",
    "understand_code",
    "add_test",
    "review_code",
    "optimize_performance",
    "write_docs",
    "deploy",
    "migrate",
    "debug_incident",
    "onboard",
    "configure_agent",
    "track_goal",
)

_W = MappingProxyType

INTENT_WEIGHTS: Mapping[str, Mapping[str, float]] = _W({
    "create": _W({
        "tribal": 1.2, "procedural": 1.5, "semantic": 1.2, "episodic": 0.5,
        "insight": 1.3, "preference": 1.2, "constraint_override": 0.8,
        "decision_context": 0.8, "workflow": 1.3, "skill": 1.2,
    }),
    "investigate": _W({
        "tribal": 1.2, "procedural": 0.8, "semantic": 1.5, "episodic": 0.8,
        "decision": 1.2, "insight": 1.5, "reference": 1.5, "preference": 0.5,
        "pattern_rationale": 1.3, "constraint_override": 0.8, "decision_context": 1.3,
        "code_smell": 0.8, "incident": 1.3, "entity": 1.2,
    }),
    "decide": _W({
        "tribal": 1.5, "procedural": 0.8, "semantic": 1.2, "episodic": 0.5,
        "decision": 2.0, "insight": 1.5, "reference": 1.2, "preference": 1.3,
        "decision_context": 1.5, "code_smell": 0.5, "meeting": 1.3, "goal": 1.2,
    }),
    "recall": _W({
        "tribal": 1.2, "semantic": 1.5, "decision": 1.2, "insight": 1.3,
        "reference": 1.2, "constraint_override": 0.8, "code_smell": 0.8,
        "conversation": 1.5, "meeting": 1.3,
    }),
    "learn": _W({
        "procedural": 1.2, "episodic": 0.5, "decision": 0.8, "insight": 1.5,
        "reference": 1.5, "preference": 0.8, "constraint_override": 0.5,
        "decision_context": 0.8, "skill": 1.5,
    }),
    "plan": _W({
        "tribal": 1.2, "procedural": 1.2, "episodic": 0.5, "decision": 1.5,
        "decision_context": 1.3, "code_smell": 0.8, "goal": 2.0, "workflow": 1.3,
        "meeting": 1.2,
    }),
    "summarize": _W({
        "semantic": 1.3, "episodic": 1.2, "decision": 1.2, "insight": 1.2,
        "reference": 0.8, "code_smell": 0.8, "conversation": 1.5, "meeting": 1.5,
    }),
    "add_feature": _W({
        "procedural": 1.5, "semantic": 1.2, "episodic": 0.5, "decision": 0.8,
        "reference": 0.8, "pattern_rationale": 1.3, "decision_context": 0.8,
        "code_smell": 1.2,
    }),
    "fix_bug": _W({
        "tribal": 1.5, "procedural": 0.8, "semantic": 1.2, "decision": 0.5,
        "insight": 1.2, "reference": 0.8, "preference": 0.5, "constraint_override": 0.8,
        "code_smell": 1.5, "incident": 1.5, "environment": 1.2,
    }),
    "refactor": _W({
        "tribal": 1.2, "semantic": 1.3, "episodic": 0.5, "decision": 1.2,
        "insight": 1.2, "preference": 1.2, "pattern_rationale": 1.5,
        "constraint_override": 1.2, "decision_context": 1.5, "code_smell": 1.3,
    }),
    "security_audit": _W({
        "tribal": 2.0, "semantic": 1.5, "episodic": 0.3, "insight": 1.5,
        "reference": 1.5, "preference": 0.5, "pattern_rationale": 1.2,
        "constraint_override": 1.5, "code_smell": 1.8, "incident": 1.8,
        "environment": 1.3,
    }),
    "understand_code": _W({
        "tribal": 1.2, "procedural": 0.8, "semantic": 1.5, "episodic": 0.5,
        "insight": 1.2, "reference": 1.2, "preference": 0.5, "pattern_rationale": 1.5,
        "constraint_override": 0.8, "decision_context": 1.5, "entity": 1.2,
    }),
    "add_test": _W({
        "tribal": 1.2, "procedural": 1.5, "episodic": 0.5, "decision": 0.5,
        "preference": 1.2, "constraint_override": 0.8, "decision_context": 0.8,
        "code_smell": 1.3,
    }),
    "review_code": _W({
        "tribal": 1.3, "episodic": 0.5, "preference": 1.5, "pattern_rationale": 1.5,
        "constraint_override": 1.3, "code_smell": 1.8, "feedback": 1.5,
        "conversation": 0.5,
    }),
    "optimize_performance": _W({
        "tribal": 1.3, "episodic": 0.5, "insight": 1.5, "preference": 0.8,
        "pattern_rationale": 1.2, "code_smell": 1.5, "incident": 1.3,
        "environment": 1.3,
    }),
    "write_docs": _W({
        "procedural": 1.3, "semantic": 1.5, "episodic": 0.5, "reference": 1.5,
        "pattern_rationale": 1.3, "decision_context": 1.3, "code_smell": 0.5,
        "workflow": 1.2,
    }),
    "deploy": _W({
        "tribal": 1.5, "procedural": 1.8, "episodic": 0.5, "preference": 0.5,
        "constraint_override": 1.2, "workflow": 1.8, "incident": 1.5,
        "environment": 2.0,
    }),
    "migrate": _W({
        "tribal": 1.5, "procedural": 1.5, "episodic": 0.5, "decision": 1.3,
        "constraint_override": 1.3, "decision_context": 1.5, "entity": 1.2,
        "environment": 1.5,
    }),
    "debug_incident": _W({
        "tribal": 1.8, "procedural": 1.2, "episodic": 1.2, "insight": 1.3,
        "preference": 0.5, "code_smell": 1.3, "incident": 2.0, "meeting": 0.8,
        "environment": 1.5,
    }),
    "onboard": _W({
        "tribal": 1.5, "procedural": 1.5, "semantic": 1.5, "episodic": 0.3,
        "reference": 1.5, "preference": 1.2, "entity": 1.3, "workflow": 1.3,
        "conversation": 0.5, "environment": 1.3,
    }),
    "configure_agent": _W({
        "episodic": 0.5, "preference": 1.5, "agent_spawn": 2.0, "feedback": 1.3,
        "workflow": 1.5, "skill": 1.5,
    }),
    "track_goal": _W({
        "decision": 1.3, "reference": 0.8, "code_smell": 0.5, "goal": 2.0,
        "conversation": 1.2, "meeting": 1.3,
    }),
})
"""Multiplier per (intent, memory type).  Missing pairs weigh 1.0."""

IMPORTANCE_SCORES: Mapping[str, float] = _W({
    "low": 0.25,
    "normal": 0.5,
    "high": 0.75,
    "critical": 1.0,
})

_TOKEN_RE = re.compile(r"[a-z0-9_]{2,}")


def _tokens(text: str) -> set[str]:
    return set(_TOKEN_RE.findall(text.lower()))


def lexical_overlap(focus: str, text: str) -> float:
    """Share of the focus terms that appear in *text*, in ``[0, 1]``."""
    query = _tokens(focus)
    if not query:
        return 0.0
    return len(query & _tokens(text)) / len(query)


class IntentWeighter:
    """Looks up (intent, memory type) multipliers."""

    def __init__(self, weights: Mapping[str, Mapping[str, float]] = INTENT_WEIGHTS) -> None:
        self._weights = weights

    def validate(self, intent: str) -> None:
        if intent not in self._weights:
            raise ValueError(f"Invalid intent {intent!r}. Must be one of: {', '.join(INTENTS)}")

    def weight(self, intent: str, memory_type: str) -> float:
        self.validate(intent)
        return self._weights[intent].get(memory_type, 1.0)


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class RetrievedMemory:
    """One ranked memory with its rendered content."""

    memory: Memory
    score: float
    content: str
    tokens: int
    breakdown: dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.memory.id,
            "type": self.memory.type,
            "content": self.content,
            "score": round(self.score, 4),
            "tokens": self.tokens,
            "confidence": round(self.memory.confidence, 4),
            "importance": self.memory.importance,
            "breakdown": self.breakdown,
        }


@dataclass
class RetrievalResult:
    """Ranked, budget-bounded memories for one request.

    Attributes
    ----------
    memories:
        Selected memories, highest score first.
    tokens_used:
        Sum of the selected memories' token estimates.
    candidates_considered:
        Memories scored before budget fitting.
    """

    intent: str
    focus: str
    level: str
    budget_tokens: int
    memories: list[RetrievedMemory] = field(default_factory=list)
    tokens_used: int = 0
    candidates_considered: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent": self.intent,
            "focus": self.focus,
            "level": self.level,
            "budget_tokens": self.budget_tokens,
            "tokens_used": self.tokens_used,
            "candidates_considered": self.candidates_considered,
            "memories": [m.to_dict() for m in self.memories],
        }


# ---------------------------------------------------------------------------
# Retrieval engine
# ---------------------------------------------------------------------------


class RetrievalEngine:
    """Ranks memories for an intent and fits them into a token budget.

    Parameters
    ----------
    memories:
        The memory store to read.
    compressor:
        Renders memories at the requested level.
    config:
        Weights, recency window and limits.  Defaults to the global
        retrieval configuration.
    guard:
        Factory for an async context held around every store read and
        the access bookkeeping, so retrieval never overlaps a
        consolidation pass.
    """

    def __init__(
        self,
        memories: MemoryStore,
        compressor: HierarchicalCompressor | None = None,
        config: RetrievalConfig | None = None,
        guard: Callable[[], AsyncContextManager[Any]] | None = None,
    ) -> None:
        self._memories = memories
        self._compressor = compressor or HierarchicalCompressor()
        self._cfg = config or get_config().retrieval
        self._weighter = IntentWeighter()
        self._guard = guard or nullcontext

    async def retrieve(
        self,
        intent: str,
        focus: str = "",
        budget_tokens: int | None = None,
        exclude_ids: Iterable[str] = (),
        level: str = "summary",
        types: tuple[str, ...] | None = None,
        now: datetime | None = None,
    ) -> RetrievalResult:
        """Return the best memories for *intent* and *focus* within budget.

        Parameters
        ----------
        intent:
            One of :data:`INTENTS`.
        focus:
            Free text describing the task; drives lexical relevance.
        budget_tokens:
            Token ceiling for the returned content.  Defaults to
            ``default_budget_tokens``.
        exclude_ids:
            Memory ids already seen this session.
        level:
            Compression level used to render each memory.
        types:
            Restrict candidates to these memory types.

        Raises
        ------
        ValueError
            On an unknown intent or level, or a non-positive budget.
        """
        self._weighter.validate(intent)
        if level not in LEVELS:
            raise ValueError(f"Invalid level {level!r}. Must be one of: {', '.join(LEVELS)}")
        budget = self._cfg.default_budget_tokens if budget_tokens is None else budget_tokens
        if budget <= 0:
            raise ValueError(f"budget_tokens must be positive, got {budget}")

        now = now or datetime.now(tz=timezone.utc)
        async with self._guard():
            candidates = await self._memories.search(
                MemoryQuery(types=types, exclude_ids=tuple(exclude_ids)),
                limit=self._cfg.candidate_limit,
            )
            ranked = self.rank(intent, focus, candidates, now)

            result = RetrievalResult(
                intent=intent,
                focus=focus,
                level=level,
                budget_tokens=budget,
                candidates_considered=len(candidates),
            )
            for memory, score, breakdown in ranked:
                content = self._compressor.render(memory, level)
                tokens = estimate_tokens(content)
                if result.tokens_used + tokens > budget:
                    if not result.memories:
                        # Oversized head: return it alone rather than nothing.
                        result.memories.append(RetrievedMemory(memory, score, content, tokens, breakdown))
                        result.tokens_used = tokens
                    break
                result.memories.append(RetrievedMemory(memory, score, content, tokens, breakdown))
                result.tokens_used += tokens

            await self._memories.record_access_batch([m.memory.id for m in result.memories])

        log.info(
            "Retrieved %d/%d memories for intent=%s (budget: %d/%d tokens)",
            len(result.memories),
            len(candidates),
            intent,
            result.tokens_used,
            budget,
        )
        return result

    def rank(
        self,
        intent: str,
        focus: str,
        memories: list[Memory],
        now: datetime,
    ) -> list[tuple[Memory, float, dict[str, float]]]:
        """Score *memories* and sort them, highest first."""
        weights = self._cfg.weights
        scored: list[tuple[Memory, float, dict[str, float]]] = []

        for memory in memories:
            relevance = lexical_overlap(focus, memory.searchable_text())
            recency = self._recency(memory, now)
            confidence = decayed_confidence(memory, now)
            importance = IMPORTANCE_SCORES.get(memory.importance, 0.5)
            intent_weight = self._weighter.weight(intent, memory.type)

            base = (
                relevance * weights.relevance
                + recency * weights.recency
                + confidence * weights.confidence
                + importance * weights.importance
            )
            breakdown = {
                "relevance": round(relevance, 4),
                "recency": round(recency, 4),
                "confidence": round(confidence, 4),
                "importance": importance,
                "intent_weight": intent_weight,
            }
            scored.append((memory, base * intent_weight, breakdown))

        scored.sort(key=lambda triple: triple[1], reverse=True)
        return scored

    def _recency(self, memory: Memory, now: datetime) -> float:
        """1.0 today, falling linearly to the floor over the recency window."""
        window = self._cfg.recency_window_days
        ref = parse_timestamp(memory.last_accessed or memory.created_at)
        days_since = days_between(ref, now) if ref else window
        return max(self._cfg.recency_floor, 1.0 - days_since / window)
