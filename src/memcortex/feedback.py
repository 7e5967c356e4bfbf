"""Explicit feedback on memories.

A feedback request confirms, rejects or modifies one memory and may
explicitly declare other memories it contradicts or confirms.  Rejections
also run contradiction detection (unless disabled) so that similar memories
making the rejected claim lose confidence too.

Everything a request changes (the acted memory, confirmations,
contradictions and their cascades, the validation history row and the
contradiction ledger rows) is written in one transaction.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from memcortex.config import FeedbackConfig, get_config
from memcortex.contradiction import ContradictionDetector, ContradictionResult, insert_contradiction
from memcortex.memory import MemoryStore, write_fields
from memcortex.propagation import ConfidencePropagator, ConfidenceUpdate
from memcortex.storage import utc_now_iso

log = logging.getLogger(__name__)

FEEDBACK_ACTIONS: tuple[str, ...] = ("confirm", "reject", "modify")

_MESSAGES = {
    "confirm": "Memory confirmed. Confidence increased.",
    "reject": "Memory rejected. Confidence decreased.",
    "modify": "Memory modified. Content updated.",
}


@dataclass(frozen=True, slots=True)
class FeedbackRequest:
    """One feedback action on one memory."""

    memory_id: str
    action: str
    feedback: str | None = None
    modification: str | None = None
    contradicts: tuple[str, ...] = ()
    confirms: tuple[str, ...] = ()
    auto_detect_contradictions: bool = True

    def __post_init__(self) -> None:
        object.__setattr__(self, "contradicts", tuple(self.contradicts or ()))
        object.__setattr__(self, "confirms", tuple(self.confirms or ()))

    def validate(self) -> None:
        """Raise :class:`ValueError` if the request cannot be applied."""
        if not self.memory_id:
            raise ValueError("memory_id is required")
        if self.action not in FEEDBACK_ACTIONS:
            raise ValueError(
                f"Invalid action {self.action!r}. Must be one of: {', '.join(FEEDBACK_ACTIONS)}"
            )
        if self.action == "modify" and not self.modification:
            raise ValueError("modify requires a non-empty modification")
        for name in ("contradicts", "confirms"):
            if not all(isinstance(i, str) and i for i in getattr(self, name)):
                raise ValueError(f"{name} must be a list of memory ids")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FeedbackRequest:
        return cls(
            memory_id=data.get("memory_id", ""),
            action=data.get("action", ""),
            feedback=data.get("feedback"),
            modification=data.get("modification"),
            contradicts=tuple(data.get("contradicts") or ()),
            confirms=tuple(data.get("confirms") or ()),
            auto_detect_contradictions=data.get("auto_detect_contradictions", True),
        )


@dataclass
class FeedbackResult:
    """Outcome of one feedback request.

    ``confidence_updates`` lists every change in application order, the
    acted memory first.
    """

    success: bool
    memory_id: str
    action: str
    previous_confidence: float
    new_confidence: float
    message: str
    contradictions_detected: list[ContradictionResult] = field(default_factory=list)
    confidence_updates: list[ConfidenceUpdate] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "success": self.success,
            "memory_id": self.memory_id,
            "action": self.action,
            "previous_confidence": round(self.previous_confidence, 4),
            "new_confidence": round(self.new_confidence, 4),
            "message": self.message,
        }
        if self.contradictions_detected:
            data["contradictions_detected"] = [c.to_dict() for c in self.contradictions_detected]
        if self.confidence_updates:
            data["confidence_updates"] = [u.to_dict() for u in self.confidence_updates]
        return data


class FeedbackProcessor:
    """Applies :class:`FeedbackRequest` objects.

    Parameters
    ----------
    memories:
        The memory store.
    detector:
        Used for automatic contradiction detection on reject.
    propagator:
        Applies confidence changes and owns the transaction.
    config:
        Confidence steps.  Defaults to the global feedback configuration.
    """

    def __init__(
        self,
        memories: MemoryStore,
        detector: ContradictionDetector,
        propagator: ConfidencePropagator,
        config: FeedbackConfig | None = None,
    ) -> None:
        self._memories = memories
        self._detector = detector
        self._propagator = propagator
        self._cfg = config or get_config().feedback

    async def process(self, request: FeedbackRequest) -> FeedbackResult:
        """Apply *request*.

        Returns
        -------
        FeedbackResult
            ``success=False`` with ``"Memory not found"`` when the acted
            memory does not exist; nothing is written in that case.

        Raises
        ------
        ValueError
            If the request is invalid.  Raised before any mutation.
        PropagationError
            If the transaction fails; nothing is persisted.
        """
        request.validate()

        memory = await self._memories.read(request.memory_id)
        if memory is None:
            return FeedbackResult(
                success=False,
                memory_id=request.memory_id,
                action=request.action,
                previous_confidence=0.0,
                new_confidence=0.0,
                message="Memory not found",
            )

        previous = memory.confidence
        new = self.next_confidence(request.action, previous)

        detected: list[ContradictionResult] = []
        if request.action == "reject" and request.auto_detect_contradictions:
            detected = await self._detector.detect(memory)

        explicit_ids = [cid for cid in request.contradicts if cid != memory.id]
        existing = await self._memories.read_many(explicit_ids)
        explicit = [
            ContradictionResult(
                existing_memory_id=cid,
                contradiction_type="direct",
                confidence=self._cfg.explicit_contradiction_confidence,
                evidence=request.feedback or "Explicit contradiction from user feedback",
                suggested_action="lower_confidence",
                similarity_score=self._cfg.explicit_contradiction_similarity,
            )
            for cid in explicit_ids
            if cid in existing
        ]
        confirm_ids = [cid for cid in request.confirms if cid != memory.id]

        def _apply(conn: sqlite3.Connection, updates: list[ConfidenceUpdate]) -> list[ConfidenceUpdate]:
            now = utc_now_iso()
            fields: dict[str, Any] = {
                "confidence": new,
                "last_accessed": now,
                "access_count": memory.access_count + 1,
            }
            if request.action == "confirm":
                fields["last_validated"] = now
            elif request.action == "modify":
                fields["summary"] = request.modification
            write_fields(conn, memory.id, fields)
            updates.append(ConfidenceUpdate(
                memory_id=memory.id,
                previous_confidence=previous,
                new_confidence=new,
                reason=f"{request.action}: {request.feedback or 'User feedback'}",
            ))
            conn.execute(
                """
                INSERT INTO memory_validation_history
                    (memory_id, action, feedback, previous_confidence, new_confidence, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (memory.id, request.action, request.feedback, previous, new, now),
            )

            if request.action == "confirm":
                for cid in confirm_ids:
                    self._propagator.confirmation_in(
                        conn, cid, memory.id, request.feedback or "Explicit confirmation", updates,
                    )
                    if memory.type == "feedback":
                        self._propagator.consensus_in(conn, cid, updates)

            for contradiction in (*detected, *explicit):
                insert_contradiction(conn, memory.id, contradiction)
                self._propagator.contradiction_in(conn, contradiction, memory.id, updates)
            return updates

        updates = await self._propagator.transact(_apply)

        log.info(
            "Feedback %s on %s: %.2f -> %.2f (%d update(s), %d contradiction(s))",
            request.action,
            memory.id,
            previous,
            new,
            len(updates),
            len(detected) + len(explicit),
        )
        return FeedbackResult(
            success=True,
            memory_id=memory.id,
            action=request.action,
            previous_confidence=previous,
            new_confidence=new,
            message=_MESSAGES[request.action],
            contradictions_detected=[*detected, *explicit],
            confidence_updates=updates,
        )

    def next_confidence(self, action: str, previous: float) -> float:
        """Confidence after *action*, clamped to the action's cap or floor."""
        cfg = self._cfg
        if action == "confirm":
            return min(cfg.confirm_cap, previous + cfg.confirm_delta)
        if action == "reject":
            return max(cfg.reject_floor, previous + cfg.reject_delta)
        if action == "modify":
            return max(cfg.modify_floor, previous + cfg.modify_delta)
        raise ValueError(f"Invalid action {action!r}")
