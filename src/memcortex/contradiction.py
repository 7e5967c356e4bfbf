"""Contradiction detection between memories.

:class:`ContradictionDetector` asks a similarity provider for memories close
to a given one and looks for textual signals that the two disagree:

- **negation mismatch** (0.4): one text negates, the other does not.
- **absolute conflict** (0.3): both texts make absolute claims.
- **temporal supersession** (0.5): the new memory is over 30 days newer.
- **feedback correction** (0.7): a feedback memory's correction repeats at
  least three significant words of the existing memory.
- **topic conflict** (0.5): both memories name nearly the same topic.

The contradiction confidence is the mean signal weight scaled by how similar
the two memories are.  Detected contradictions are written to the
``memory_contradictions`` ledger by the caller (see
:func:`insert_contradiction` and :class:`ContradictionLedger`).
"""

from __future__ import annotations

import logging
import re
import sqlite3
from dataclasses import dataclass
from typing import Any

from memcortex.config import ContradictionConfig, get_config
from memcortex.memory import Memory, days_between, parse_timestamp
from memcortex.similarity import SimilarityProvider, text_similarity
from memcortex.storage import Storage, utc_now_iso

log = logging.getLogger(__name__)

CONTRADICTION_TYPES: tuple[str, ...] = ("direct", "partial", "supersedes", "temporal")
SUGGESTED_ACTIONS: tuple[str, ...] = ("lower_confidence", "archive", "merge", "flag_for_review")
RESOLUTION_STATUSES: tuple[str, ...] = ("pending", "resolved", "dismissed")

_NEGATION_RE = re.compile(
    r"\b(not|never|don't|doesn't|shouldn't|won't|can't|avoid|instead|rather than|no longer)\b",
    re.IGNORECASE,
)
_ABSOLUTE_RE = re.compile(r"\b(always|never|must|should|every|all|none)\b", re.IGNORECASE)

_TEMPORAL_GAP_DAYS = 30
_FEEDBACK_MIN_SHARED_WORDS = 3
_TOPIC_SIMILARITY = 0.7
_TOPIC_KEYS = ("topic", "name", "title", "pattern_name", "constraint_name")


@dataclass(frozen=True, slots=True)
class ContradictionSignal:
    type: str
    weight: float
    reason: str


@dataclass(frozen=True, slots=True)
class ContradictionResult:
    """A conflict between a new memory and an existing one."""

    existing_memory_id: str
    contradiction_type: str
    confidence: float
    evidence: str
    suggested_action: str
    similarity_score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "existing_memory_id": self.existing_memory_id,
            "contradiction_type": self.contradiction_type,
            "confidence": round(self.confidence, 4),
            "evidence": self.evidence,
            "suggested_action": self.suggested_action,
            "similarity_score": round(self.similarity_score, 4),
        }


# ---------------------------------------------------------------------------
# Text extraction
# ---------------------------------------------------------------------------


def _join(*parts: Any) -> str:
    return " ".join(str(p) for p in parts if p)


def memory_text(memory: Memory) -> str:
    """The claim text compared for contradictions, chosen per memory type."""
    p = memory.payload
    if memory.type in ("tribal", "semantic") and (p.get("topic") or p.get("knowledge")):
        return f"{p.get('topic', '')}: {p.get('knowledge', '')}".strip(": ")
    if memory.type in ("procedural", "workflow") and (p.get("name") or p.get("description")):
        return f"{p.get('name', '')}: {p.get('description', '')}".strip(": ")
    if memory.type == "pattern_rationale" and (p.get("pattern_name") or p.get("rationale")):
        return f"{p.get('pattern_name', '')}: {p.get('rationale', '')}".strip(": ")
    if memory.type == "feedback" and (p.get("correction") or p.get("extracted_rule")):
        return _join(p.get("correction"), p.get("extracted_rule"))
    if memory.type == "skill" and p.get("name"):
        principles = p.get("key_principles") or []
        if isinstance(principles, list):
            principles = ". ".join(str(x) for x in principles)
        return f"{p['name']}: {principles}".strip(": ")
    return memory.summary


def _topic(memory: Memory) -> str | None:
    for key in _TOPIC_KEYS:
        value = memory.payload.get(key)
        if value:
            return str(value)
    return None


# ---------------------------------------------------------------------------
# Detector
# ---------------------------------------------------------------------------


class ContradictionDetector:
    """Finds memories that conflict with a given memory.

    Parameters
    ----------
    similarity:
        Provider of candidate memories and their similarity scores.
    config:
        Thresholds.  Defaults to the global contradiction configuration.
    """

    def __init__(
        self,
        similarity: SimilarityProvider,
        config: ContradictionConfig | None = None,
    ) -> None:
        self._similarity = similarity
        self._cfg = config or get_config().contradiction

    async def detect(self, memory: Memory) -> list[ContradictionResult]:
        """Contradictions between *memory* and similar existing memories.

        Only memory types listed in ``check_types`` are examined, on both
        sides.  Results below ``min_confidence`` are dropped; the rest are
        sorted by confidence, highest first.
        """
        if memory.type not in self._cfg.check_types:
            return []
        if not memory_text(memory):
            return []

        candidates = await self._similarity.find_similar(
            memory,
            limit=self._cfg.max_candidates,
            min_similarity=self._cfg.min_similarity,
        )

        results: list[ContradictionResult] = []
        for candidate, score in candidates:
            if candidate.id == memory.id or candidate.type not in self._cfg.check_types:
                continue
            result = self.check_pair(memory, candidate, score)
            if result is not None and result.confidence >= self._cfg.min_confidence:
                results.append(result)

        results.sort(key=lambda r: r.confidence, reverse=True)
        if results:
            log.info("Detected %d contradiction(s) for memory %s", len(results), memory.id)
        return results

    def check_pair(
        self,
        new: Memory,
        existing: Memory,
        similarity: float | None = None,
    ) -> ContradictionResult | None:
        """Evaluate one pair; ``None`` when no signal fires.

        *similarity* defaults to lexical similarity of the two claim texts.
        """
        new_text = memory_text(new)
        existing_text = memory_text(existing)
        if not new_text or not existing_text:
            return None
        if similarity is None:
            similarity = text_similarity(new_text, existing_text)

        signals = self.signals(new, existing, new_text, existing_text)
        if not signals:
            return None

        confidence = self._confidence(signals, similarity)
        kind = self._contradiction_type(signals)
        return ContradictionResult(
            existing_memory_id=existing.id,
            contradiction_type=kind,
            confidence=confidence,
            evidence="; ".join(s.reason for s in signals),
            suggested_action=self._suggested_action(kind, confidence, existing),
            similarity_score=similarity,
        )

    def signals(
        self,
        new: Memory,
        existing: Memory,
        new_text: str,
        existing_text: str,
    ) -> list[ContradictionSignal]:
        found: list[ContradictionSignal] = []

        if bool(_NEGATION_RE.search(new_text)) != bool(_NEGATION_RE.search(existing_text)):
            found.append(ContradictionSignal(
                "negation_mismatch", 0.4, "One memory uses negation while the other does not",
            ))

        if _ABSOLUTE_RE.search(new_text) and _ABSOLUTE_RE.search(existing_text):
            found.append(ContradictionSignal(
                "absolute_conflict", 0.3, "Both memories make absolute statements",
            ))

        if self._is_temporal_supersession(new, existing):
            found.append(ContradictionSignal(
                "temporal_supersession", 0.5, "New memory appears to update older information",
            ))

        if new.type == "feedback" and self._is_feedback_correction(new, existing_text):
            found.append(ContradictionSignal(
                "feedback_contradiction", 0.7, "Feedback explicitly corrects existing knowledge",
            ))

        new_topic, existing_topic = _topic(new), _topic(existing)
        if new_topic and existing_topic and (
            text_similarity(new_topic, existing_topic) > _TOPIC_SIMILARITY
        ):
            found.append(ContradictionSignal(
                "topic_conflict", 0.5, "Same topic with different conclusions",
            ))

        return found

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _is_temporal_supersession(new: Memory, existing: Memory) -> bool:
        new_at = parse_timestamp(new.created_at)
        existing_at = parse_timestamp(existing.created_at)
        if new_at is None or existing_at is None:
            return False
        return days_between(existing_at, new_at) > _TEMPORAL_GAP_DAYS

    @staticmethod
    def _is_feedback_correction(feedback: Memory, existing_text: str) -> bool:
        correction = str(feedback.payload.get("correction") or "").lower()
        if not correction:
            return False
        words = [w for w in existing_text.lower().split() if len(w) > 4]
        return sum(1 for w in words if w in correction) >= _FEEDBACK_MIN_SHARED_WORDS

    @staticmethod
    def _confidence(signals: list[ContradictionSignal], similarity: float) -> float:
        base = sum(s.weight for s in signals) / len(signals)
        if similarity > 0.8:
            boost = 1.2
        elif similarity > 0.6:
            boost = 1.0
        else:
            boost = 0.8
        return min(1.0, base * boost)

    @staticmethod
    def _contradiction_type(signals: list[ContradictionSignal]) -> str:
        kinds = {s.type for s in signals}
        if "temporal_supersession" in kinds:
            return "supersedes"
        if "feedback_contradiction" in kinds:
            return "direct"
        if {"negation_mismatch", "absolute_conflict"} <= kinds:
            return "direct"
        return "partial"

    @staticmethod
    def _suggested_action(kind: str, confidence: float, existing: Memory) -> str:
        if kind == "direct" and confidence > 0.8:
            return "archive"
        if kind == "supersedes":
            return "archive"
        if kind == "partial" and existing.confidence > 0.7:
            return "flag_for_review"
        return "lower_confidence"


# ---------------------------------------------------------------------------
# Ledger
# ---------------------------------------------------------------------------


def insert_contradiction(
    conn: sqlite3.Connection,
    memory_id: str,
    result: ContradictionResult,
) -> int:
    """Record a detected or declared contradiction through a raw connection."""
    cursor = conn.execute(
        """
        INSERT INTO memory_contradictions
            (memory_id, existing_memory_id, contradiction_type, confidence,
             similarity, evidence, suggested_action, detected_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            memory_id,
            result.existing_memory_id,
            result.contradiction_type,
            result.confidence,
            result.similarity_score,
            result.evidence,
            result.suggested_action,
            utc_now_iso(),
        ),
    )
    return cursor.lastrowid or 0


class ContradictionLedger:
    """Read and resolve rows of the ``memory_contradictions`` table."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    async def entries(self, status: str | None = "pending", limit: int = 50) -> list[dict[str, Any]]:
        if status is not None and status not in RESOLUTION_STATUSES:
            raise ValueError(
                f"Invalid status {status!r}. Must be one of: {', '.join(RESOLUTION_STATUSES)}"
            )
        sql = "SELECT * FROM memory_contradictions"
        params: tuple[Any, ...] = ()
        if status is not None:
            sql += " WHERE resolution_status = ?"
            params = (status,)
        sql += " ORDER BY detected_at DESC, id DESC LIMIT ?"
        rows = await self._storage.execute(sql, (*params, limit))
        return [dict(row) for row in rows]

    async def resolve(self, contradiction_id: int, status: str = "resolved") -> bool:
        """Mark a ledger row ``resolved`` or ``dismissed``.

        Returns ``False`` if no row has *contradiction_id*.
        """
        if status not in ("resolved", "dismissed"):
            raise ValueError(f"Cannot resolve a contradiction to status {status!r}")
        rows = await self._storage.execute_write_returning(
            "UPDATE memory_contradictions SET resolution_status = ? WHERE id = ? RETURNING id",
            (status, contradiction_id),
        )
        return bool(rows)
