"""Integration tests for the Cortex orchestrator."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import pytest

from memcortex.config import get_config
from memcortex.cortex import Cortex
from tests.conftest import days_ago


class TestLifecycle:
    async def test_uninitialized_raises(self, tmp_path: Path) -> None:
        cortex = Cortex(db_path=tmp_path / "x.db")
        with pytest.raises(RuntimeError, match="not initialized"):
            await cortex.status()

    async def test_initialize_is_idempotent(self, cortex: Cortex) -> None:
        storage = cortex.memories.storage
        await cortex.initialize()
        assert cortex.memories.storage is storage
        assert not cortex.scheduler.running

    async def test_shutdown_is_repeatable(self, tmp_path: Path) -> None:
        cortex = Cortex(db_path=tmp_path / "x.db")
        await cortex.initialize(start_scheduler=True)
        assert cortex.scheduler.running
        await cortex.shutdown()
        await cortex.shutdown()
        assert not cortex.initialized


class TestRemember:
    async def test_remember_and_retrieve(self, cortex: Cortex) -> None:
        stored = await cortex.remember(
            "tribal",
            "Billing retries need an idempotency key",
            payload={"topic": "billing"},
        )
        memory_id = stored["memory"]["id"]
        assert stored["contradictions"] == []

        context = await cortex.retrieve("fix_bug", "billing retries")

        assert [m["id"] for m in context["memories"]] == [memory_id]
        assert context["tokens_used"] > 0

    async def test_contradiction_recorded_without_confidence_change(self, cortex: Cortex) -> None:
        knowledge = "retry failed payment webhook calls with exponential backoff"
        first = await cortex.memories.create(
            "tribal",
            "x",
            payload={"topic": "billing retries", "knowledge": f"{knowledge} twice"},
            created_at=days_ago(60),
        )
        second = await cortex.remember(
            "tribal",
            "y",
            payload={"topic": "billing retries", "knowledge": f"{knowledge} thrice"},
        )

        [found] = second["contradictions"]
        assert found["existing_memory_id"] == first.id
        assert found["contradiction_type"] == "supersedes"
        ledger = await cortex.contradictions()
        assert ledger["count"] == 1
        original = await cortex.memories.read(first.id)
        assert original.confidence == 1.0

    async def test_invalid_type(self, cortex: Cortex) -> None:
        with pytest.raises(ValueError):
            await cortex.remember("gossip", "x")

    async def test_bad_embedding_rejected_before_storing(self, cortex: Cortex) -> None:
        expected = ValueError if cortex.memories.storage.vec_available else RuntimeError
        with pytest.raises(expected):
            await cortex.remember("semantic", "Caches are invalidated on write", embedding=[1.0])
        assert await cortex.memories.count() == 0

    async def test_embedding_drives_contradiction_candidates(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.setenv("MEMCORTEX_EMBEDDING_DIMS", "3")
        get_config(reload=True)
        cortex = Cortex(db_path=tmp_path / "vec.db")
        await cortex.initialize()
        try:
            if not cortex.memories.storage.vec_available:
                pytest.skip("sqlite-vec is not available")
            first = await cortex.remember(
                "tribal",
                "a",
                payload={"topic": "release timing", "knowledge": "deploys happen on fridays"},
                embedding=[1.0, 0.0, 0.0],
            )
            second = await cortex.remember(
                "tribal",
                "b",
                payload={"topic": "release timing", "knowledge": "never ship near the weekend"},
                embedding=[1.0, 0.05, 0.0],
            )

            stored = await cortex.memories.get_embedding(second["memory"]["id"])
            assert stored is not None
            assert [c["existing_memory_id"] for c in second["contradictions"]] == [
                first["memory"]["id"]
            ]
        finally:
            await cortex.shutdown()


class TestTools:
    async def test_backup_snapshot_is_readable(self, cortex: Cortex) -> None:
        stored = await cortex.remember("semantic", "Caches are invalidated on write")

        result = await cortex.backup()

        conn = sqlite3.connect(result["path"])
        try:
            rows = conn.execute("SELECT id FROM memories").fetchall()
        finally:
            conn.close()
        assert rows == [(stored["memory"]["id"],)]

    async def test_status_shape(self, cortex: Cortex) -> None:
        await cortex.remember("semantic", "Caches are invalidated on write")
        status = await cortex.status()
        assert set(status) == {
            "metrics",
            "memory_count",
            "by_type",
            "triggers",
            "scheduler",
            "pending_contradictions",
            "tables",
            "db_size_mb",
            "vec_available",
        }
        assert status["memory_count"] == 1
        assert status["by_type"] == {"semantic": 1}
        assert status["triggers"] == []

    async def test_feedback_round_trip(self, cortex: Cortex) -> None:
        stored = await cortex.remember("semantic", "Use pgbouncer", confidence=0.5)
        memory_id = stored["memory"]["id"]

        result = await cortex.feedback(memory_id, "reject", feedback="we moved to pgcat")

        assert result["success"]
        assert result["new_confidence"] == pytest.approx(0.2)

    async def test_feedback_invalid_action(self, cortex: Cortex) -> None:
        with pytest.raises(ValueError):
            await cortex.feedback("x", "upvote")

    async def test_consolidate_dry_run(self, cortex: Cortex) -> None:
        await cortex.memories.create(
            "episodic", "old standup", created_at=days_ago(60)
        )

        preview = await cortex.consolidate("moderate", dry_run=True)
        assert preview["dry_run"]
        assert preview["archived"] == 1
        assert preview["trigger_type"] == "manual"
        assert await cortex.memories.count() == 1

        applied = await cortex.consolidate("moderate")
        assert applied["archived"] == 1
        assert await cortex.memories.count() == 0

        history = await cortex.history()
        assert history["count"] >= 1
        assert history["entries"][-1]["action"] == "consolidate"

    async def test_consolidate_cluster_only(self, cortex: Cortex) -> None:
        result = await cortex.consolidate("conservative", context_cluster="src/billing")
        assert result["trigger_type"] == "context_cluster"
        assert result["scope"]["context_cluster"] == "src/billing"

    async def test_consolidate_rejects_bad_scope(self, cortex: Cortex) -> None:
        with pytest.raises(ValueError):
            await cortex.consolidate("reckless")

    async def test_resolve_contradiction(self, cortex: Cortex) -> None:
        assert await cortex.resolve_contradiction(42) == {
            "success": False,
            "message": "Contradiction not found",
        }

    async def test_validate_single_and_sweep(self, cortex: Cortex) -> None:
        stale = await cortex.memories.create("semantic", "old fact", created_at=days_ago(45))
        await cortex.memories.create("semantic", "new fact")

        single = await cortex.validate(stale.id)
        assert single["success"]
        assert single["issues"]
        assert single["decayed_confidence"] < 1.0

        sweep = await cortex.validate()
        assert sweep["checked"] == 2
        assert [f["memory_id"] for f in sweep["flagged"]] == [stale.id]

        missing = await cortex.validate("nope")
        assert missing == {"success": False, "memory_id": "nope", "message": "Memory not found"}

    async def test_restore_without_compression(self, cortex: Cortex) -> None:
        stored = await cortex.remember("semantic", "fact")
        result = await cortex.restore(stored["memory"]["id"])
        assert result["success"] is False
        assert result["message"] == "No compressed copy found"
