"""Scope-bounded memory consolidation: archive, merge, and compress.

:meth:`ConsolidationEngine.run` takes a
:class:`~memcortex.triggers.ConsolidationScope` and works through three
steps over the active memories the scope selects:

1. **Archive** -- memories already superseded by another memory, and
   memories whose decayed confidence fell below their type's floor, are
   archived with a reason.  The record is kept.
2. **Merge** -- groups of at least ``merge_min_group`` memories that share
   a topic become one summary memory.  Episodic and conversation memories
   merge into ``semantic`` knowledge.  Sources are archived with
   ``superseded_by`` pointing at the summary, and ``supersedes`` edges
   record provenance.  Each merge is one transaction.
3. **Compress** -- older memories are demoted to a shorter stored level
   (moderate: ``expanded``, aggressive: ``summary``).  The full record is
   kept in cold storage and can be restored.

Aggressiveness bounds the work: a conservative run takes at most
``conservative_limit`` actions and never compresses, a moderate run at most
``moderate_limit``, and an aggressive run keeps going until the scope's
``target_token_reduction`` is met or no candidates remain.  Core memories are
never touched.

Only one run may be active at a time, across processes: the engine takes the
``consolidation`` advisory lock and returns a ``skipped`` result when another
holder has it.  Non-dry runs write an audit row to ``consolidation_log``.

Usage::

    from memcortex.consolidation import ConsolidationEngine
    from memcortex.triggers import ConsolidationScope

    engine = ConsolidationEngine(memories)
    preview = await engine.run(ConsolidationScope(aggressiveness="moderate"), dry_run=True)
    result = await engine.run(ConsolidationScope(aggressiveness="moderate"))
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from memcortex.compression import HierarchicalCompressor, estimate_tokens
from memcortex.config import ConsolidationConfig, get_config
from memcortex.decay import MIN_CONFIDENCE, decayed_confidence, is_archival_eligible
from memcortex.memory import (
    COMPRESSION_LEVELS,
    EPHEMERAL_TYPES,
    IMPORTANCE_LEVELS,
    Memory,
    MemoryQuery,
    MemoryStore,
    insert_memory,
    insert_relationship,
    parse_timestamp,
    write_fields,
)
from memcortex.storage import Storage, utc_now_iso
from memcortex.triggers import ConsolidationScope

logger = logging.getLogger(__name__)

_LOCK_NAME = "consolidation"
_TOPIC_KEYS = ("topic", "name", "title", "pattern_name", "constraint_name")
_COMPRESS_TARGET = {"moderate": "expanded", "aggressive": "summary"}


# ---------------------------------------------------------------------------
# ConsolidationResult
# ---------------------------------------------------------------------------


@dataclass
class ConsolidationResult:
    """Summary of a single consolidation run.

    Attributes
    ----------
    archived:
        Memories archived as superseded or decayed below their floor.
    merged:
        Source memories folded into summary memories.
    summaries_created:
        Summary memories created by merges.
    compressed:
        Memories demoted to a shorter stored level.
    tokens_freed:
        Estimated tokens removed from the active set.
    details:
        Per-action detail dicts.
    dry_run:
        Whether this was a preview (no mutations).
    skipped:
        ``True`` when another run held the consolidation lock.
    """

    archived: int = 0
    merged: int = 0
    summaries_created: int = 0
    compressed: int = 0
    tokens_freed: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)
    dry_run: bool = False
    skipped: bool = False
    trigger_type: str | None = None
    scope: dict[str, Any] | None = None

    @property
    def actions(self) -> int:
        """Archives, merges and compressions taken, one per memory or group."""
        return self.archived + self.summaries_created + self.compressed

    def to_dict(self) -> dict[str, Any]:
        return {
            "archived": self.archived,
            "merged": self.merged,
            "summaries_created": self.summaries_created,
            "compressed": self.compressed,
            "tokens_freed": self.tokens_freed,
            "dry_run": self.dry_run,
            "skipped": self.skipped,
            "trigger_type": self.trigger_type,
            "scope": self.scope,
            "details": self.details,
        }


def topic_key(memory: Memory) -> str | None:
    """Normalised topic used to group memories for merging."""
    for key in _TOPIC_KEYS:
        value = memory.payload.get(key)
        if isinstance(value, str) and value.strip():
            return " ".join(value.lower().split())
    if memory.tags:
        return memory.tags[0].strip().lower() or None
    return None


def merge_target_type(memory_type: str) -> str:
    return "semantic" if memory_type in EPHEMERAL_TYPES else memory_type


# ---------------------------------------------------------------------------
# ConsolidationEngine
# ---------------------------------------------------------------------------


class ConsolidationEngine:
    """Executes consolidation runs over a memory store.

    Parameters
    ----------
    memories:
        The memory store to consolidate.
    compressor:
        Renders compressed representations.  A default instance is
        created when omitted.
    config:
        Limits and thresholds.  Defaults to the global configuration.
    """

    def __init__(
        self,
        memories: MemoryStore,
        compressor: HierarchicalCompressor | None = None,
        config: ConsolidationConfig | None = None,
    ) -> None:
        self._memories = memories
        self._storage: Storage = memories.storage
        self._compressor = compressor or HierarchicalCompressor()
        self._cfg = config or get_config().consolidation

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def run(
        self,
        scope: ConsolidationScope | None = None,
        dry_run: bool = False,
        trigger_type: str = "manual",
        now: datetime | None = None,
    ) -> ConsolidationResult:
        """Run one consolidation pass over *scope*.

        Parameters
        ----------
        scope:
            Which memories to touch and how hard.  Defaults to a
            conservative pass over every type.
        dry_run:
            Compute what would happen without writing anything.
        trigger_type:
            Recorded in the audit log.
        now:
            Reference time for ages and decay; defaults to UTC now.

        Returns
        -------
        ConsolidationResult
            Counts and per-action details.  ``skipped`` is set when
            another run holds the lock.
        """
        scope = scope or ConsolidationScope()
        now = now or datetime.now(tz=timezone.utc)
        result = ConsolidationResult(
            dry_run=dry_run,
            trigger_type=trigger_type,
            scope=scope.to_dict(),
        )
        holder = uuid.uuid4().hex

        def _try_lock(conn: sqlite3.Connection) -> bool:
            return Storage.try_acquire_lock(conn, _LOCK_NAME, holder)

        acquired = await self._storage.execute_transaction(_try_lock)
        if not acquired:
            logger.warning("Consolidation already in progress; skipping")
            result.skipped = True
            return result

        try:
            candidates = await self._select(scope, now)
            remaining = await self._archive(result, scope, candidates, now)
            remaining = await self._merge(result, scope, remaining, now)
            await self._compress(result, scope, remaining, now)

            if not dry_run:
                await self._log_consolidation(result)
        finally:
            def _release(conn: sqlite3.Connection) -> None:
                Storage.release_lock(conn, _LOCK_NAME, holder)

            await self._storage.execute_transaction(_release)

        if result.actions:
            logger.info(
                "Consolidation %s complete (%s, %s): archived=%d  merged=%d  "
                "summaries=%d  compressed=%d  tokens_freed=%d",
                "(dry-run)" if dry_run else "",
                trigger_type,
                scope.aggressiveness,
                result.archived,
                result.merged,
                result.summaries_created,
                result.compressed,
                result.tokens_freed,
            )
        else:
            logger.debug("Consolidation (%s) found nothing to do", trigger_type)
        return result

    async def get_history(self, limit: int = 20) -> list[dict[str, Any]]:
        """Recent ``consolidation_log`` entries, newest first.

        JSON columns are parsed back into Python objects.
        """
        rows = await self._storage.execute(
            """
            SELECT id, action, trigger_type, details, memories_affected, created_at
            FROM consolidation_log
            ORDER BY id DESC
            LIMIT ?
            """,
            (limit,),
        )
        entries: list[dict[str, Any]] = []
        for row in rows:
            entry: dict[str, Any] = {
                "id": row["id"],
                "action": row["action"],
                "trigger_type": row["trigger_type"],
                "created_at": row["created_at"],
            }
            for column in ("details", "memories_affected"):
                raw = row[column]
                if raw:
                    try:
                        entry[column] = json.loads(raw)
                    except (json.JSONDecodeError, TypeError):
                        entry[column] = raw
                else:
                    entry[column] = None
            entries.append(entry)
        return entries

    async def last_run_at(self) -> datetime | None:
        """Completion time of the most recent logged run, if any."""
        rows = await self._storage.execute(
            "SELECT created_at FROM consolidation_log WHERE action = 'consolidate' "
            "ORDER BY id DESC LIMIT 1"
        )
        return parse_timestamp(rows[0]["created_at"]) if rows else None

    # ------------------------------------------------------------------
    # Selection and limits
    # ------------------------------------------------------------------

    async def _select(self, scope: ConsolidationScope, now: datetime) -> list[Memory]:
        created_before = None
        if scope.min_age:
            created_before = (now - timedelta(days=scope.min_age)).isoformat()
        query = MemoryQuery(
            types=scope.memory_types,
            created_before=created_before,
            oldest_first=True,
        )
        memories = await self._memories.search(query, limit=self._cfg.scan_limit)

        selected: list[Memory] = []
        for memory in memories:
            if memory.type == "core":
                continue
            if scope.context_cluster and not self._in_cluster(memory, scope.context_cluster):
                continue
            if scope.max_confidence is not None and (
                decayed_confidence(memory, now) > scope.max_confidence
            ):
                continue
            selected.append(memory)
        return selected

    @staticmethod
    def _in_cluster(memory: Memory, cluster: str) -> bool:
        return cluster in memory.tags or any(f.startswith(cluster) for f in memory.linked_files)

    def _limit(self, scope: ConsolidationScope) -> int | None:
        if scope.aggressiveness == "conservative":
            return self._cfg.conservative_limit
        if scope.aggressiveness == "moderate":
            return self._cfg.moderate_limit
        return None

    def _can_act(self, result: ConsolidationResult, scope: ConsolidationScope) -> bool:
        limit = self._limit(scope)
        if limit is not None and result.actions >= limit:
            return False
        if (
            scope.aggressiveness == "aggressive"
            and scope.target_token_reduction is not None
            and result.tokens_freed >= scope.target_token_reduction
        ):
            return False
        return True

    # ------------------------------------------------------------------
    # Step 1: Archive
    # ------------------------------------------------------------------

    async def _archive(
        self,
        result: ConsolidationResult,
        scope: ConsolidationScope,
        candidates: list[Memory],
        now: datetime,
    ) -> list[Memory]:
        remaining: list[Memory] = []
        for memory in candidates:
            reason = None
            if memory.superseded_by:
                reason = f"Superseded by {memory.superseded_by}"
            elif is_archival_eligible(memory, now):
                reason = (
                    f"Decayed confidence {decayed_confidence(memory, now):.2f} below "
                    f"{MIN_CONFIDENCE.get(memory.type, 0.2):.2f} floor"
                )
            if reason is None:
                remaining.append(memory)
                continue
            if not self._can_act(result, scope):
                continue

            if not result.dry_run:
                await self._memories.archive(memory.id, reason)
            result.archived += 1
            result.tokens_freed += estimate_tokens(memory)
            result.details.append({"action": "archive", "memory_id": memory.id, "reason": reason})

        if result.archived:
            logger.info("Archived %d memories", result.archived)
        return remaining

    # ------------------------------------------------------------------
    # Step 2: Merge
    # ------------------------------------------------------------------

    async def _merge(
        self,
        result: ConsolidationResult,
        scope: ConsolidationScope,
        candidates: list[Memory],
        now: datetime,
    ) -> list[Memory]:
        groups: dict[tuple[str, str], list[Memory]] = {}
        for memory in candidates:
            key = topic_key(memory)
            if key is None:
                continue
            groups.setdefault((merge_target_type(memory.type), key), []).append(memory)

        merged_ids: set[str] = set()
        for (target_type, topic), group in groups.items():
            if len(group) < self._cfg.merge_min_group:
                continue
            if not self._can_act(result, scope):
                break

            summary = self._build_summary(target_type, topic, group, now)
            tokens_before = sum(estimate_tokens(m) for m in group)
            if not result.dry_run:
                await self._execute_merge(summary, group)

            merged_ids.update(m.id for m in group)
            result.merged += len(group)
            result.summaries_created += 1
            result.tokens_freed += max(0, tokens_before - estimate_tokens(summary))
            result.details.append({
                "action": "merge",
                "summary_id": summary.id,
                "source_ids": [m.id for m in group],
                "type": target_type,
                "topic": topic,
            })

        if result.summaries_created:
            logger.info(
                "Merged %d memories into %d summaries",
                result.merged,
                result.summaries_created,
            )
        return [m for m in candidates if m.id not in merged_ids]

    @staticmethod
    def _build_summary(
        target_type: str,
        topic: str,
        group: list[Memory],
        now: datetime,
    ) -> Memory:
        lines = list(dict.fromkeys(m.summary for m in group if m.summary))
        importance = max((m.importance for m in group), key=IMPORTANCE_LEVELS.index)

        def _union(attr: str) -> list[str]:
            return list(dict.fromkeys(v for m in group for v in getattr(m, attr)))

        created = now.isoformat()
        return Memory(
            id=uuid.uuid4().hex,
            type=target_type,
            summary=f"Consolidated {len(group)} memories: {topic}",
            payload={
                "topic": topic,
                "knowledge": "\n".join(lines),
                "consolidated_from": [m.id for m in group],
            },
            # Never below the target type's floor, or the next run would archive it.
            confidence=max(
                max(m.confidence for m in group),
                MIN_CONFIDENCE.get(target_type, 0.2),
            ),
            importance=importance,
            created_at=created,
            updated_at=created,
            linked_patterns=_union("linked_patterns"),
            linked_files=_union("linked_files"),
            linked_functions=_union("linked_functions"),
            linked_constraints=_union("linked_constraints"),
            tags=_union("tags"),
        )

    async def _execute_merge(self, summary: Memory, group: list[Memory]) -> None:
        """Insert *summary* and archive every source, in one transaction."""

        def _do_merge(conn: sqlite3.Connection) -> None:
            insert_memory(conn, summary)
            for source in group:
                write_fields(conn, source.id, {
                    "archived": True,
                    "archive_reason": f"Merged into {summary.id}",
                    "superseded_by": summary.id,
                })
                insert_relationship(conn, summary.id, source.id, "supersedes")

        await self._storage.execute_transaction(_do_merge)
        logger.debug("Merged %d memories into %s", len(group), summary.id)

    # ------------------------------------------------------------------
    # Step 3: Compress
    # ------------------------------------------------------------------

    async def _compress(
        self,
        result: ConsolidationResult,
        scope: ConsolidationScope,
        candidates: list[Memory],
        now: datetime,
    ) -> None:
        target = _COMPRESS_TARGET.get(scope.aggressiveness)
        if target is None:
            return
        cutoff = now - timedelta(days=self._cfg.compress_min_age_days)
        target_rank = COMPRESSION_LEVELS.index(target)

        for memory in candidates:
            if COMPRESSION_LEVELS.index(memory.compression_level) >= target_rank:
                continue
            created = parse_timestamp(memory.created_at)
            if created is None or created > cutoff:
                continue
            if not self._can_act(result, scope):
                break

            summary, payload = self._compressor.compact(memory, target)
            before = estimate_tokens(memory)
            after = estimate_tokens(
                Memory.from_dict({
                    **memory.to_dict(),
                    "summary": summary,
                    "payload": payload,
                    "compression_level": target,
                })
            )
            if after >= before:
                continue

            if not result.dry_run:
                await self._execute_compress(memory, summary, payload, target)
            result.compressed += 1
            result.tokens_freed += before - after
            result.details.append({
                "action": "compress",
                "memory_id": memory.id,
                "from_level": memory.compression_level,
                "to_level": target,
                "tokens_saved": before - after,
            })

        if result.compressed:
            logger.info("Compressed %d memories to %s", result.compressed, target)

    async def _execute_compress(
        self,
        memory: Memory,
        summary: str,
        payload: dict[str, Any],
        level: str,
    ) -> None:
        record = json.dumps(memory.to_dict(), ensure_ascii=False)

        def _do_compress(conn: sqlite3.Connection) -> None:
            # Keep the first (fullest) record when compressing a second time.
            conn.execute(
                "INSERT OR IGNORE INTO memory_cold_storage (memory_id, record, stored_at) "
                "VALUES (?, ?, ?)",
                (memory.id, record, utc_now_iso()),
            )
            write_fields(conn, memory.id, {
                "summary": summary,
                "payload": payload,
                "compression_level": level,
            })

        await self._storage.execute_transaction(_do_compress)

    # ------------------------------------------------------------------
    # Consolidation logging
    # ------------------------------------------------------------------

    async def _log_consolidation(self, result: ConsolidationResult) -> None:
        """Write a summary row plus one row per action type to ``consolidation_log``."""
        affected: set[str] = set()
        for detail in result.details:
            for key in ("memory_id", "summary_id"):
                if key in detail:
                    affected.add(detail[key])
            affected.update(detail.get("source_ids", ()))

        summary = {
            "archived": result.archived,
            "merged": result.merged,
            "summaries_created": result.summaries_created,
            "compressed": result.compressed,
            "tokens_freed": result.tokens_freed,
            "scope": result.scope,
        }
        now = utc_now_iso()
        rows: list[tuple[Any, ...]] = [(
            "consolidate",
            result.trigger_type,
            json.dumps(summary),
            json.dumps(sorted(affected)),
            now,
        )]

        for action_type in ("archive", "merge", "compress"):
            action_details = [d for d in result.details if d.get("action") == action_type]
            if not action_details:
                continue
            ids: set[str] = set()
            for detail in action_details:
                ids.update(v for k, v in detail.items() if k in ("memory_id", "summary_id"))
                ids.update(detail.get("source_ids", ()))
            rows.append((
                action_type,
                result.trigger_type,
                json.dumps(action_details),
                json.dumps(sorted(ids)),
                now,
            ))

        await self._storage.execute_many(
            """
            INSERT INTO consolidation_log
                (action, trigger_type, details, memories_affected, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            rows,
        )
        logger.debug("Consolidation actions logged to consolidation_log table")
