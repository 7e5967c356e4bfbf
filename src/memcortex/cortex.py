"""Central orchestrator for the memory lifecycle engine.

The :class:`Cortex` wires storage, the memory store, contradiction
detection, confidence propagation, feedback, consolidation, the adaptive
scheduler and retrieval into one API surface that the MCP server and the
CLI call.

There is **one Cortex per process**.  All public methods return plain dicts
because their output is JSON-serialised for MCP tool responses.

Usage::

    from memcortex.cortex import Cortex

    cortex = Cortex()
    await cortex.initialize()

    memory = await cortex.remember("tribal", "Never call the billing API without an idempotency key")
    context = await cortex.retrieve("fix_bug", "billing retries")
    await cortex.shutdown()
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from memcortex.compression import HierarchicalCompressor
from memcortex.config import get_config
from memcortex.consolidation import ConsolidationEngine
from memcortex.contradiction import ContradictionDetector, ContradictionLedger, insert_contradiction
from memcortex.decay import TemporalValidator, decayed_confidence
from memcortex.feedback import FeedbackProcessor, FeedbackRequest
from memcortex.memory import MemoryQuery, MemoryStore
from memcortex.metrics import MetricsCalculator
from memcortex.propagation import ConfidencePropagator
from memcortex.retrieval import RetrievalEngine
from memcortex.scheduler import AdaptiveScheduler
from memcortex.similarity import StoreSimilarity
from memcortex.storage import Storage
from memcortex.triggers import (
    ConsolidationScope,
    TriggerEvaluator,
    context_cluster_trigger,
    manual_trigger,
)

logger = logging.getLogger(__name__)


class Cortex:
    """The central orchestrator.  One cortex per process.

    Typical lifecycle::

        cortex = Cortex()
        await cortex.initialize(start_scheduler=True)
        ...                         # MCP tool calls
        await cortex.shutdown()     # stop the scheduler, close the DB
    """

    def __init__(self, db_path: Path | None = None) -> None:
        self._config = get_config()
        self._db_path_override = db_path
        self._storage: Storage | None = None
        self._memories: MemoryStore | None = None
        self._detector: ContradictionDetector | None = None
        self._propagator: ConfidencePropagator | None = None
        self._feedback: FeedbackProcessor | None = None
        self._ledger: ContradictionLedger | None = None
        self._consolidation: ConsolidationEngine | None = None
        self._evaluator: TriggerEvaluator | None = None
        self._scheduler: AdaptiveScheduler | None = None
        self._retrieval: RetrievalEngine | None = None
        self._validator = TemporalValidator()
        self._initialized = False

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self, start_scheduler: bool = False) -> None:
        """Create every component.  Idempotent.

        Parameters
        ----------
        start_scheduler:
            Also start the periodic consolidation loop.  Long-running hosts
            (the MCP server) pass ``True``; one-shot CLI commands do not.
        """
        if self._initialized:
            return

        cfg = self._config
        self._storage = Storage(self._db_path_override or cfg.db_path)
        await self._storage.initialize()

        self._memories = MemoryStore(self._storage)
        compressor = HierarchicalCompressor()
        similarity = StoreSimilarity(self._memories, scan_limit=cfg.consolidation.scan_limit)

        self._detector = ContradictionDetector(similarity, cfg.contradiction)
        self._propagator = ConfidencePropagator(self._storage, cfg.propagation)
        self._feedback = FeedbackProcessor(
            self._memories, self._detector, self._propagator, cfg.feedback,
        )
        self._ledger = ContradictionLedger(self._storage)

        self._consolidation = ConsolidationEngine(self._memories, compressor, cfg.consolidation)
        self._evaluator = TriggerEvaluator(cfg.scheduler)
        self._scheduler = AdaptiveScheduler(
            MetricsCalculator(self._memories, cfg.scheduler),
            self._evaluator,
            self._consolidation,
            cfg.scheduler,
        )
        self._retrieval = RetrievalEngine(
            self._memories,
            compressor,
            cfg.retrieval,
            guard=self._scheduler.reading,
        )

        self._initialized = True
        if start_scheduler:
            await self._scheduler.start()
        logger.info("Cortex initialized. DB: %s", self._storage.db_path)

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError(
                "Cortex not initialized. Call await cortex.initialize() first."
            )

    @property
    def memories(self) -> MemoryStore:
        self._ensure_initialized()
        assert self._memories is not None
        return self._memories

    @property
    def scheduler(self) -> AdaptiveScheduler:
        self._ensure_initialized()
        assert self._scheduler is not None
        return self._scheduler

    # ==================================================================
    # Tool methods
    # ==================================================================

    async def status(self) -> dict[str, Any]:
        """Metrics snapshot, firing triggers and scheduler state.

        Returns
        -------
        dict
            Keys: ``metrics``, ``memory_count``, ``by_type``, ``triggers``,
            ``scheduler``, ``pending_contradictions``, ``tables``,
            ``db_size_mb``, ``vec_available``.
        """
        self._ensure_initialized()
        assert self._storage is not None
        assert self._memories is not None
        assert self._scheduler is not None
        assert self._evaluator is not None
        assert self._ledger is not None

        now = datetime.now(tz=timezone.utc)
        snapshot = await self._scheduler.refresh_metrics(now)
        last_run = await self._scheduler.get_last_run()
        triggers = self._evaluator.evaluate_all(snapshot, last_run, now)
        pending = await self._ledger.entries("pending", limit=1000)

        return {
            "metrics": snapshot.to_dict(),
            "memory_count": snapshot.memory_count,
            "by_type": await self._memories.count_by_type(),
            "triggers": [t.to_dict() for t in triggers],
            "scheduler": self._scheduler.status(),
            "pending_contradictions": len(pending),
            "tables": await self._storage.table_counts(),
            "db_size_mb": await self._storage.get_db_size_mb(),
            "vec_available": self._storage.vec_available,
        }

    async def consolidate(
        self,
        aggressiveness: str = "moderate",
        memory_types: list[str] | None = None,
        context_cluster: str | None = None,
        min_age_days: float | None = None,
        max_confidence: float | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Request a manual consolidation pass.

        With only *context_cluster* given, the pass is a conservative
        context-cluster run.  Otherwise the scope is built from the
        arguments.

        Raises
        ------
        ValueError
            On an invalid aggressiveness, memory type or confidence bound.
        """
        self._ensure_initialized()
        assert self._scheduler is not None

        cluster_only = (
            context_cluster
            and aggressiveness == "conservative"
            and not memory_types
            and min_age_days is None
            and max_confidence is None
        )
        if cluster_only:
            trigger = context_cluster_trigger(context_cluster)
        else:
            scope = ConsolidationScope(
                memory_types=tuple(memory_types) if memory_types else None,
                context_cluster=context_cluster,
                min_age=min_age_days,
                max_confidence=max_confidence,
                aggressiveness=aggressiveness,
            )
            trigger = manual_trigger(scope)

        result = await self._scheduler.request_manual(trigger, dry_run=dry_run)
        return result.to_dict()

    async def feedback(
        self,
        memory_id: str,
        action: str,
        feedback: str | None = None,
        modification: str | None = None,
        contradicts: list[str] | None = None,
        confirms: list[str] | None = None,
        auto_detect_contradictions: bool = True,
    ) -> dict[str, Any]:
        """Confirm, reject or modify a memory.  See :class:`FeedbackProcessor`."""
        self._ensure_initialized()
        assert self._feedback is not None

        request = FeedbackRequest(
            memory_id=memory_id,
            action=action,
            feedback=feedback,
            modification=modification,
            contradicts=tuple(contradicts or ()),
            confirms=tuple(confirms or ()),
            auto_detect_contradictions=auto_detect_contradictions,
        )
        result = await self._feedback.process(request)
        return result.to_dict()

    async def retrieve(
        self,
        intent: str,
        focus: str = "",
        budget_tokens: int | None = None,
        exclude_ids: list[str] | None = None,
        level: str = "summary",
        types: list[str] | None = None,
    ) -> dict[str, Any]:
        """Intent-weighted memories for a task, within a token budget."""
        self._ensure_initialized()
        assert self._retrieval is not None

        result = await self._retrieval.retrieve(
            intent,
            focus,
            budget_tokens=budget_tokens,
            exclude_ids=exclude_ids or (),
            level=level,
            types=tuple(types) if types else None,
        )
        return result.to_dict()

    async def contradictions(
        self,
        status: str | None = "pending",
        limit: int = 50,
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._ledger is not None

        entries = await self._ledger.entries(status, limit=limit)
        return {"status": status, "count": len(entries), "contradictions": entries}

    async def resolve_contradiction(
        self,
        contradiction_id: int,
        status: str = "resolved",
    ) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._ledger is not None

        found = await self._ledger.resolve(contradiction_id, status)
        if not found:
            return {"success": False, "message": "Contradiction not found"}
        return {"success": True, "id": contradiction_id, "status": status}

    async def validate(self, memory_id: str | None = None, limit: int = 100) -> dict[str, Any]:
        """Temporal validation for one memory, or for the oldest active ones.

        Returns
        -------
        dict
            For one memory: ``memory_id``, ``confidence``,
            ``decayed_confidence``, ``issues``.  For a sweep: ``checked``
            and ``flagged`` (only memories with issues).
        """
        self._ensure_initialized()
        assert self._memories is not None

        now = datetime.now(tz=timezone.utc)
        if memory_id:
            memory = await self._memories.read(memory_id)
            if memory is None:
                return {"success": False, "memory_id": memory_id, "message": "Memory not found"}
            return {
                "success": True,
                "memory_id": memory.id,
                "confidence": memory.confidence,
                "decayed_confidence": round(decayed_confidence(memory, now), 4),
                "issues": [i.to_dict() for i in self._validator.validate(memory, now)],
            }

        memories = await self._memories.search(MemoryQuery(oldest_first=True), limit=limit)
        flagged = []
        for memory in memories:
            issues = self._validator.validate(memory, now)
            if issues:
                flagged.append({
                    "memory_id": memory.id,
                    "type": memory.type,
                    "summary": memory.summary,
                    "decayed_confidence": round(decayed_confidence(memory, now), 4),
                    "issues": [i.to_dict() for i in issues],
                })
        return {"success": True, "checked": len(memories), "flagged": flagged}

    async def history(self, limit: int = 20) -> dict[str, Any]:
        self._ensure_initialized()
        assert self._consolidation is not None

        entries = await self._consolidation.get_history(limit)
        return {"count": len(entries), "entries": entries}

    async def backup(self) -> dict[str, Any]:
        """Snapshot the database into ``backup_dir``, pruning past ``backup_count``."""
        self._ensure_initialized()
        assert self._storage is not None

        path = await self._storage.backup()
        return {"success": True, "path": str(path)}

    async def remember(
        self,
        type: str,
        summary: str,
        payload: dict[str, Any] | None = None,
        confidence: float = 1.0,
        importance: str = "normal",
        tags: list[str] | None = None,
        linked_files: list[str] | None = None,
        check_contradictions: bool = True,
        embedding: list[float] | None = None,
    ) -> dict[str, Any]:
        """Store a memory and report any contradictions it introduces.

        Detected contradictions are recorded in the ledger but do not
        change confidence; use :meth:`feedback` for that.  When an
        *embedding* is given it is stored in the sqlite-vec index, and
        contradiction candidates come from a KNN search instead of lexical
        overlap.

        Raises
        ------
        ValueError
            On an invalid type or importance, or an embedding whose length
            differs from ``embedding_dims``.
        RuntimeError
            If an embedding is given but sqlite-vec is unavailable.
        """
        self._ensure_initialized()
        assert self._memories is not None
        assert self._detector is not None
        assert self._ledger is not None
        assert self._storage is not None

        if embedding is not None:
            self._memories.check_embedding(embedding)
        memory = await self._memories.create(
            type,
            summary,
            payload=payload,
            confidence=confidence,
            importance=importance,
            tags=tags,
            linked_files=linked_files,
        )
        if embedding is not None:
            await self._memories.set_embedding(memory.id, embedding)
        detected = await self._detector.detect(memory) if check_contradictions else []
        if detected:
            def _record(conn: sqlite3.Connection) -> None:
                for contradiction in detected:
                    insert_contradiction(conn, memory.id, contradiction)

            await self._storage.execute_transaction(_record)

        return {
            "memory": memory.to_dict(),
            "contradictions": [c.to_dict() for c in detected],
        }

    async def restore(self, memory_id: str) -> dict[str, Any]:
        """Undo compression of a memory from cold storage."""
        self._ensure_initialized()
        assert self._memories is not None

        memory = await self._memories.restore_full(memory_id)
        if memory is None:
            return {"success": False, "memory_id": memory_id, "message": "No compressed copy found"}
        return {"success": True, "memory": memory.to_dict()}

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop the scheduler and close storage.  Safe to call repeatedly."""
        if self._scheduler is not None:
            try:
                await self._scheduler.stop()
            except Exception:
                logger.exception("Error stopping scheduler during shutdown")

        if self._storage:
            await self._storage.close()

        self._initialized = False
        logger.info("Cortex shut down")
