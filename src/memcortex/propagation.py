"""Confidence propagation through the memory relationship graph.

Confidence changes when a memory is contradicted, confirmed or superseded,
and those changes spread along ``supports`` edges: if a memory loses
confidence, the memories that support it lose a damped share too.

The cascade is an explicit work-list walk bounded by
:attr:`~memcortex.config.PropagationRules.max_depth`, and every confidence
change yields one :class:`ConfidenceUpdate`.  All writes of one call happen
inside a single ``BEGIN IMMEDIATE`` transaction; if any step fails the whole
call is rolled back and :class:`PropagationError` reports the updates that
were rolled back.

The ``*_in`` methods operate on a raw connection so callers (see
:mod:`memcortex.feedback`) can compose several propagation steps into one
transaction through :meth:`ConfidencePropagator.transact`.
"""

from __future__ import annotations

import logging
import sqlite3
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, TypeVar

from memcortex.config import PropagationRules, get_config
from memcortex.contradiction import ContradictionResult
from memcortex.decay import clamp
from memcortex.memory import insert_relationship, read_memory, would_create_cycle, write_fields
from memcortex.storage import Storage, utc_now_iso

_T = TypeVar("_T")

log = logging.getLogger(__name__)

_MIN_CASCADE_CHANGE = 0.01
_RECALC_SUPPORT_STEP = 0.05
_RECALC_SUPPORT_CAP = 0.2
_RECALC_CONTRADICTION_STEP = 0.1
_RECALC_FLOOR = 0.1


@dataclass(frozen=True, slots=True)
class ConfidenceUpdate:
    """One audited confidence change."""

    memory_id: str
    previous_confidence: float
    new_confidence: float
    reason: str
    propagated_from: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "memory_id": self.memory_id,
            "previous_confidence": round(self.previous_confidence, 4),
            "new_confidence": round(self.new_confidence, 4),
            "reason": self.reason,
        }
        if self.propagated_from is not None:
            data["propagated_from"] = self.propagated_from
        return data


class PropagationError(RuntimeError):
    """A propagation transaction failed and was rolled back.

    Attributes
    ----------
    updates:
        The updates applied inside the transaction before the failure.
        None of them persisted.
    rolled_back:
        Always ``True``; kept explicit for callers that report it.
    """

    def __init__(self, message: str, updates: list[ConfidenceUpdate]) -> None:
        super().__init__(message)
        self.updates = updates
        self.rolled_back = True


def _lowered(previous: float, delta: float, floor: float) -> float:
    """``previous + delta`` clamped to ``[floor, 1]`` without ever raising *previous*."""
    return clamp(max(min(previous, floor), previous + delta))


class ConfidencePropagator:
    """Applies contradiction, confirmation and supersession effects.

    Parameters
    ----------
    storage:
        An initialised :class:`~memcortex.storage.Storage`.
    rules:
        Deltas and thresholds.  Defaults to the global propagation rules.
    """

    def __init__(self, storage: Storage, rules: PropagationRules | None = None) -> None:
        self._storage = storage
        self._rules = rules or get_config().propagation

    @property
    def rules(self) -> PropagationRules:
        return self._rules

    # ------------------------------------------------------------------
    # Transaction wrapper
    # ------------------------------------------------------------------

    async def transact(
        self,
        fn: Callable[[sqlite3.Connection, list[ConfidenceUpdate]], _T],
    ) -> _T:
        """Run *fn(conn, updates)* in one transaction.

        Raises
        ------
        PropagationError
            If *fn* raises; the transaction is rolled back first.
        """
        updates: list[ConfidenceUpdate] = []

        def _run(conn: sqlite3.Connection) -> _T:
            return fn(conn, updates)

        try:
            return await self._storage.execute_transaction(_run)
        except Exception as exc:
            log.error(
                "Confidence propagation rolled back after %d update(s): %s",
                len(updates),
                exc,
            )
            raise PropagationError(
                f"Confidence propagation failed and was rolled back: {exc}",
                list(updates),
            ) from exc

    # ------------------------------------------------------------------
    # Async entry points
    # ------------------------------------------------------------------

    async def apply_contradiction(
        self,
        contradiction: ContradictionResult,
        source_id: str,
    ) -> list[ConfidenceUpdate]:
        def _do(conn: sqlite3.Connection, updates: list[ConfidenceUpdate]) -> list[ConfidenceUpdate]:
            self.contradiction_in(conn, contradiction, source_id, updates)
            return updates

        return await self.transact(_do)

    async def apply_confirmation(
        self,
        memory_id: str,
        confirming_id: str,
        context: str,
    ) -> list[ConfidenceUpdate]:
        def _do(conn: sqlite3.Connection, updates: list[ConfidenceUpdate]) -> list[ConfidenceUpdate]:
            self.confirmation_in(conn, memory_id, confirming_id, context, updates)
            return updates

        return await self.transact(_do)

    async def apply_supersession(
        self,
        new_id: str,
        old_id: str,
        reason: str,
    ) -> list[ConfidenceUpdate]:
        def _do(conn: sqlite3.Connection, updates: list[ConfidenceUpdate]) -> list[ConfidenceUpdate]:
            self.supersession_in(conn, new_id, old_id, reason, updates)
            return updates

        return await self.transact(_do)

    async def check_consensus(self, memory_id: str) -> ConfidenceUpdate | None:
        def _do(conn: sqlite3.Connection, updates: list[ConfidenceUpdate]) -> ConfidenceUpdate | None:
            return self.consensus_in(conn, memory_id, updates)

        return await self.transact(_do)

    async def recalculate(
        self,
        memory_ids: list[str] | None = None,
        limit: int = 1_000,
    ) -> list[ConfidenceUpdate]:
        """Re-derive confidence from each memory's relationship balance.

        Every supporting edge adds 0.05 (at most 0.2 in total) and every
        contradicting edge subtracts 0.1.  Results are clamped to
        ``[0.1, 1.0]``.  Without *memory_ids* the newest *limit* active
        memories are processed.
        """

        def _do(conn: sqlite3.Connection, updates: list[ConfidenceUpdate]) -> list[ConfidenceUpdate]:
            if memory_ids is None:
                rows = conn.execute(
                    "SELECT id FROM memories WHERE archived = 0 ORDER BY created_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
                ids = [row["id"] for row in rows]
            else:
                ids = list(memory_ids)

            for memory_id in ids:
                memory = read_memory(conn, memory_id)
                if memory is None:
                    continue
                supporters = len(self._incoming(conn, memory_id, "supports"))
                contradictors = len(self._incoming(conn, memory_id, "contradicts"))
                adjustment = (
                    min(supporters * _RECALC_SUPPORT_STEP, _RECALC_SUPPORT_CAP)
                    - contradictors * _RECALC_CONTRADICTION_STEP
                )
                if abs(adjustment) <= _MIN_CASCADE_CHANGE:
                    continue
                new = clamp(memory.confidence + adjustment, _RECALC_FLOOR, 1.0)
                write_fields(conn, memory_id, {"confidence": new})
                updates.append(ConfidenceUpdate(
                    memory_id=memory_id,
                    previous_confidence=memory.confidence,
                    new_confidence=new,
                    reason=(
                        f"Recalculated: {supporters} supporting, "
                        f"{contradictors} contradicting"
                    ),
                ))
            return updates

        return await self.transact(_do)

    # ------------------------------------------------------------------
    # Connection-level steps
    # ------------------------------------------------------------------

    def contradiction_in(
        self,
        conn: sqlite3.Connection,
        contradiction: ContradictionResult,
        source_id: str,
        updates: list[ConfidenceUpdate],
    ) -> None:
        """Lower the contradicted memory and cascade to its supporters.

        The delta for the contradiction type is scaled by the contradiction
        confidence.  Supporters receive ``supporting_propagation_factor``
        of the delta per hop, up to ``max_depth`` hops.  The contradicted
        memory is archived once its confidence reaches the archival
        threshold.
        """
        target_id = contradiction.existing_memory_id
        existing = read_memory(conn, target_id)
        if existing is None:
            return

        rules = self._rules
        delta = self.contradiction_delta(contradiction)
        new = _lowered(existing.confidence, delta, rules.archival_threshold)
        write_fields(conn, target_id, {"confidence": new})
        updates.append(ConfidenceUpdate(
            memory_id=target_id,
            previous_confidence=existing.confidence,
            new_confidence=new,
            reason=f"Contradicted by {source_id}: {contradiction.evidence}",
        ))
        if source_id != target_id:
            insert_relationship(conn, source_id, target_id, "contradicts")

        self._cascade(conn, target_id, delta * rules.supporting_propagation_factor, {source_id}, updates)

        if new <= rules.archival_threshold and not existing.archived:
            fields: dict[str, Any] = {
                "archived": True,
                "archive_reason": (
                    f"Confidence dropped below threshold after contradiction by {source_id}"
                ),
            }
            # Archived either way; the pointer is left unset if it would loop.
            if source_id != target_id and not would_create_cycle(conn, target_id, source_id):
                fields["superseded_by"] = source_id
            write_fields(conn, target_id, fields)
            log.info("Archived memory %s after contradiction by %s", target_id, source_id)

    def confirmation_in(
        self,
        conn: sqlite3.Connection,
        memory_id: str,
        confirming_id: str,
        context: str,
        updates: list[ConfidenceUpdate],
    ) -> None:
        memory = read_memory(conn, memory_id)
        if memory is None:
            return
        new = min(1.0, memory.confidence + self._rules.confirmation_delta)
        write_fields(conn, memory_id, {
            "confidence": new,
            "last_accessed": utc_now_iso(),
            "access_count": memory.access_count + 1,
        })
        updates.append(ConfidenceUpdate(
            memory_id=memory_id,
            previous_confidence=memory.confidence,
            new_confidence=new,
            reason=f"Confirmed by {confirming_id}: {context}",
        ))
        if confirming_id != memory_id:
            insert_relationship(conn, confirming_id, memory_id, "supports")

    def supersession_in(
        self,
        conn: sqlite3.Connection,
        new_id: str,
        old_id: str,
        reason: str,
        updates: list[ConfidenceUpdate],
    ) -> None:
        """Point *old_id* at its replacement and drop its confidence.

        The pointers are skipped when *new_id* already descends from
        *old_id*; the confidence drop still applies.
        """
        old = read_memory(conn, old_id)
        if old is None or read_memory(conn, new_id) is None:
            return
        rules = self._rules
        new = _lowered(old.confidence, rules.supersession_delta, rules.archival_threshold)
        if would_create_cycle(conn, old_id, new_id):
            log.warning("Supersession of %s by %s would loop; pointer not set", old_id, new_id)
            write_fields(conn, old_id, {"confidence": new})
        else:
            write_fields(conn, old_id, {"confidence": new, "superseded_by": new_id})
            write_fields(conn, new_id, {"supersedes": old_id})
        insert_relationship(conn, new_id, old_id, "supersedes")
        updates.append(ConfidenceUpdate(
            memory_id=old_id,
            previous_confidence=old.confidence,
            new_confidence=new,
            reason=f"Superseded by {new_id}: {reason}",
        ))
        if new <= rules.archival_threshold:
            write_fields(conn, old_id, {
                "archived": True,
                "archive_reason": f"Superseded by {new_id}",
            })

    def consensus_in(
        self,
        conn: sqlite3.Connection,
        memory_id: str,
        updates: list[ConfidenceUpdate],
    ) -> ConfidenceUpdate | None:
        """Boost *memory_id* once enough feedback memories support it."""
        memory = read_memory(conn, memory_id)
        if memory is None:
            return None
        rows = conn.execute(
            """
            SELECT COUNT(*) AS cnt FROM memory_relationships r
            JOIN memories m ON m.id = r.source_id
            WHERE r.target_id = ? AND r.relationship = 'supports' AND m.type = 'feedback'
            """,
            (memory_id,),
        ).fetchone()
        supporters = int(rows["cnt"])
        if supporters < self._rules.consensus_threshold:
            return None
        new = min(1.0, memory.confidence + self._rules.consensus_boost)
        write_fields(conn, memory_id, {"confidence": new})
        update = ConfidenceUpdate(
            memory_id=memory_id,
            previous_confidence=memory.confidence,
            new_confidence=new,
            reason=f"Consensus reached: {supporters} supporting feedbacks",
        )
        updates.append(update)
        return update

    def contradiction_delta(self, contradiction: ContradictionResult) -> float:
        rules = self._rules
        base = {
            "direct": rules.direct_contradiction_delta,
            "partial": rules.partial_contradiction_delta,
            "supersedes": rules.supersession_delta,
            "temporal": rules.partial_contradiction_delta,
        }[contradiction.contradiction_type]
        return base * contradiction.confidence

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _incoming(conn: sqlite3.Connection, memory_id: str, relationship: str) -> list[str]:
        rows = conn.execute(
            "SELECT source_id FROM memory_relationships WHERE target_id = ? AND relationship = ?",
            (memory_id, relationship),
        ).fetchall()
        return [row["source_id"] for row in rows]

    def _cascade(
        self,
        conn: sqlite3.Connection,
        origin_id: str,
        delta: float,
        exclude: set[str],
        updates: list[ConfidenceUpdate],
    ) -> None:
        rules = self._rules
        visited = {origin_id, *exclude}
        queue: deque[tuple[str, float, int]] = deque([(origin_id, delta, 1)])

        while queue:
            memory_id, step_delta, depth = queue.popleft()
            if depth > rules.max_depth:
                continue
            for supporter_id in self._incoming(conn, memory_id, "supports"):
                if supporter_id in visited:
                    continue
                visited.add(supporter_id)
                supporter = read_memory(conn, supporter_id)
                if supporter is None or supporter.archived:
                    continue
                new = _lowered(supporter.confidence, step_delta, rules.archival_threshold)
                if abs(new - supporter.confidence) <= _MIN_CASCADE_CHANGE:
                    continue
                write_fields(conn, supporter_id, {"confidence": new})
                updates.append(ConfidenceUpdate(
                    memory_id=supporter_id,
                    previous_confidence=supporter.confidence,
                    new_confidence=new,
                    reason=f"Supporting memory of contradicted {memory_id}",
                    propagated_from=memory_id,
                ))
                queue.append((supporter_id, step_delta * rules.supporting_propagation_factor, depth + 1))
