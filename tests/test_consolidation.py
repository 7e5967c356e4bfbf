"""Tests for scope-bounded consolidation: archive, merge and compress."""

from __future__ import annotations

import pytest

from memcortex.compression import HierarchicalCompressor
from memcortex.config import ConsolidationConfig
from memcortex.consolidation import ConsolidationEngine, merge_target_type, topic_key
from memcortex.memory import MemoryStore
from memcortex.storage import Storage
from memcortex.triggers import ConsolidationScope
from tests.conftest import NOW, count_rows, days_ago, fetch_memory, insert_memory_row, make_memory

CONSERVATIVE = ConsolidationScope(aggressiveness="conservative")
MODERATE = ConsolidationScope(aggressiveness="moderate")


def make_engine(memories: MemoryStore, **overrides) -> ConsolidationEngine:
    return ConsolidationEngine(
        memories,
        HierarchicalCompressor(),
        ConsolidationConfig(**overrides),
    )


@pytest.fixture
def engine(memories: MemoryStore) -> ConsolidationEngine:
    return make_engine(memories)


async def insert_faded_episodes(storage: Storage, count: int) -> list[str]:
    return [
        await insert_memory_row(
            storage,
            summary=f"episode {i}",
            memory_type="episodic",
            created_at=days_ago(30 + i, NOW),
        )
        for i in range(count)
    ]


async def insert_topic_group(storage: Storage, topic: str, memory_type: str = "tribal", size: int = 3) -> list[str]:
    return [
        await insert_memory_row(
            storage,
            summary=f"{topic} note {i}",
            memory_type=memory_type,
            payload={"topic": topic, "knowledge": f"fact {i}"},
            confidence=0.6 + i * 0.1,
            tags=[topic, f"t{i}"],
            created_at=days_ago(2, NOW),
        )
        for i in range(size)
    ]


class TestHelpers:
    def test_topic_key_prefers_payload(self) -> None:
        memory = make_memory(payload={"topic": "  Billing   Retries "}, tags=["x"])
        assert topic_key(memory) == "billing retries"

    def test_topic_key_falls_back_to_first_tag(self) -> None:
        assert topic_key(make_memory(tags=["Deploys"])) == "deploys"
        assert topic_key(make_memory()) is None

    def test_ephemeral_types_merge_into_semantic(self) -> None:
        assert merge_target_type("episodic") == "semantic"
        assert merge_target_type("conversation") == "semantic"
        assert merge_target_type("tribal") == "tribal"


class TestArchive:
    async def test_archives_decayed_and_superseded(
        self, engine: ConsolidationEngine, storage: Storage
    ) -> None:
        [faded] = await insert_faded_episodes(storage, 1)
        replacement = await insert_memory_row(storage, created_at=days_ago(1, NOW))
        superseded = await insert_memory_row(
            storage, superseded_by=replacement, created_at=days_ago(1, NOW)
        )
        healthy = await insert_memory_row(storage, memory_type="tribal", created_at=days_ago(1, NOW))

        result = await engine.run(CONSERVATIVE, now=NOW)

        assert result.archived == 2
        assert (await fetch_memory(storage, faded)).archived
        superseded_memory = await fetch_memory(storage, superseded)
        assert superseded_memory.archived
        assert superseded_memory.archive_reason == f"Superseded by {replacement}"
        assert not (await fetch_memory(storage, healthy)).archived
        assert result.tokens_freed > 0

    async def test_core_is_never_touched(self, engine: ConsolidationEngine, storage: Storage) -> None:
        replacement = await insert_memory_row(storage)
        core = await insert_memory_row(
            storage, memory_type="core", confidence=0.01, superseded_by=replacement,
            created_at=days_ago(1000, NOW),
        )
        await engine.run(ConsolidationScope(aggressiveness="aggressive"), now=NOW)
        assert not (await fetch_memory(storage, core)).archived

    async def test_conservative_limit(self, memories: MemoryStore, storage: Storage) -> None:
        await insert_faded_episodes(storage, 5)
        engine = make_engine(memories, conservative_limit=2)

        result = await engine.run(CONSERVATIVE, now=NOW)

        assert result.archived == 2
        assert await memories.count() == 3

    async def test_capped_runs_converge(self, memories: MemoryStore, storage: Storage) -> None:
        await insert_faded_episodes(storage, 5)
        engine = make_engine(memories, conservative_limit=2)

        counts = []
        for _ in range(10):
            result = await engine.run(CONSERVATIVE, now=NOW)
            counts.append(result.archived)
            if result.actions == 0:
                break

        assert counts == [2, 2, 1, 0]
        assert await memories.count() == 0

    async def test_aggressive_stops_at_token_target(
        self, engine: ConsolidationEngine, storage: Storage
    ) -> None:
        await insert_faded_episodes(storage, 3)
        scope = ConsolidationScope(aggressiveness="aggressive", target_token_reduction=1)
        result = await engine.run(scope, now=NOW)
        assert result.archived == 1


class TestMerge:
    async def test_merges_topic_group(self, engine: ConsolidationEngine, storage: Storage) -> None:
        sources = await insert_topic_group(storage, "billing")

        result = await engine.run(MODERATE, now=NOW)

        assert result.summaries_created == 1
        assert result.merged == 3
        summary_id = result.details[0]["summary_id"]
        summary = await fetch_memory(storage, summary_id)
        assert summary.type == "tribal"
        assert summary.confidence == pytest.approx(0.8)
        assert sorted(summary.payload["consolidated_from"]) == sorted(sources)
        assert set(summary.tags) == {"billing", "t0", "t1", "t2"}
        for source_id in sources:
            source = await fetch_memory(storage, source_id)
            assert source.archived
            assert source.superseded_by == summary_id
        assert await count_rows(
            storage, "memory_relationships", "relationship = 'supersedes' AND source_id = ?", (summary_id,)
        ) == 3

    async def test_episodes_merge_into_semantic(
        self, engine: ConsolidationEngine, storage: Storage
    ) -> None:
        await insert_topic_group(storage, "standup", memory_type="episodic")
        result = await engine.run(MODERATE, now=NOW)
        summary = await fetch_memory(storage, result.details[0]["summary_id"])
        assert summary.type == "semantic"

    async def test_small_groups_are_left_alone(
        self, engine: ConsolidationEngine, storage: Storage
    ) -> None:
        await insert_topic_group(storage, "billing", size=2)
        result = await engine.run(MODERATE, now=NOW)
        assert result.summaries_created == 0

    async def test_second_run_is_a_noop(self, engine: ConsolidationEngine, storage: Storage) -> None:
        await insert_topic_group(storage, "billing")
        await insert_faded_episodes(storage, 2)

        first = await engine.run(MODERATE, now=NOW)
        second = await engine.run(MODERATE, now=NOW)

        assert first.actions == 3
        assert second.actions == 0


class TestCompress:
    async def test_moderate_compresses_and_restores(
        self, engine: ConsolidationEngine, memories: MemoryStore, storage: Storage
    ) -> None:
        payload = {"topic": "caching", "knowledge": "Invalidate on write", "raw_notes": "n" * 2_000}
        memory_id = await insert_memory_row(
            storage,
            summary="Cache invalidation",
            payload=payload,
            created_at=days_ago(20, NOW),
        )

        result = await engine.run(MODERATE, now=NOW)

        assert result.compressed == 1
        compressed = await fetch_memory(storage, memory_id)
        assert compressed.compression_level == "expanded"
        assert "raw_notes" not in compressed.payload
        assert await count_rows(storage, "memory_cold_storage") == 1

        restored = await memories.restore_full(memory_id)
        assert restored is not None
        assert restored.payload == payload
        assert restored.compression_level == "full"
        assert await count_rows(storage, "memory_cold_storage") == 0

    async def test_conservative_never_compresses(
        self, engine: ConsolidationEngine, storage: Storage
    ) -> None:
        await insert_memory_row(
            storage, payload={"raw_notes": "n" * 2_000}, created_at=days_ago(20, NOW)
        )
        result = await engine.run(CONSERVATIVE, now=NOW)
        assert result.compressed == 0

    async def test_young_memories_are_not_compressed(
        self, engine: ConsolidationEngine, storage: Storage
    ) -> None:
        await insert_memory_row(storage, payload={"raw_notes": "n" * 2_000}, created_at=days_ago(3, NOW))
        result = await engine.run(MODERATE, now=NOW)
        assert result.compressed == 0


class TestScopeAndSafety:
    async def test_dry_run_changes_nothing(self, engine: ConsolidationEngine, storage: Storage) -> None:
        await insert_faded_episodes(storage, 2)
        await insert_topic_group(storage, "billing")

        result = await engine.run(MODERATE, dry_run=True, now=NOW)

        assert result.dry_run
        assert result.archived == 2
        assert result.summaries_created == 1
        assert await count_rows(storage, "memories", "archived = 1") == 0
        assert await count_rows(storage, "memories") == 5
        assert await count_rows(storage, "consolidation_log") == 0

    async def test_memory_type_scope(self, engine: ConsolidationEngine, storage: Storage) -> None:
        await insert_faded_episodes(storage, 1)
        result = await engine.run(
            ConsolidationScope(memory_types=("tribal",)), now=NOW
        )
        assert result.archived == 0

    async def test_context_cluster_scope(self, engine: ConsolidationEngine, storage: Storage) -> None:
        inside = await insert_memory_row(
            storage,
            memory_type="episodic",
            linked_files=["src/billing/api.py"],
            created_at=days_ago(30, NOW),
        )
        outside = await insert_memory_row(
            storage, memory_type="episodic", created_at=days_ago(30, NOW)
        )

        await engine.run(ConsolidationScope(context_cluster="src/billing"), now=NOW)

        assert (await fetch_memory(storage, inside)).archived
        assert not (await fetch_memory(storage, outside)).archived

    async def test_min_age_scope(self, engine: ConsolidationEngine, storage: Storage) -> None:
        await insert_faded_episodes(storage, 1)
        result = await engine.run(ConsolidationScope(min_age=60), now=NOW)
        assert result.archived == 0

    async def test_skips_when_lock_is_held(self, engine: ConsolidationEngine, storage: Storage) -> None:
        await storage.execute_transaction(
            lambda conn: Storage.try_acquire_lock(conn, "consolidation", "another-process")
        )
        await insert_faded_episodes(storage, 1)

        result = await engine.run(CONSERVATIVE, now=NOW)

        assert result.skipped
        assert result.actions == 0
        assert await count_rows(storage, "memories", "archived = 1") == 0

    async def test_lock_released_after_run(self, engine: ConsolidationEngine, storage: Storage) -> None:
        await engine.run(CONSERVATIVE, now=NOW)
        assert await count_rows(storage, "locks") == 0


class TestHistory:
    async def test_history_and_last_run(self, engine: ConsolidationEngine, storage: Storage) -> None:
        assert await engine.last_run_at() is None
        await insert_faded_episodes(storage, 1)

        await engine.run(CONSERVATIVE, trigger_type="scheduled", now=NOW)

        history = await engine.get_history()
        assert [entry["action"] for entry in history] == ["archive", "consolidate"]
        summary = history[1]
        assert summary["trigger_type"] == "scheduled"
        assert summary["details"]["archived"] == 1
        assert len(summary["memories_affected"]) == 1
        assert await engine.last_run_at() is not None

    async def test_empty_run_is_still_logged(self, engine: ConsolidationEngine) -> None:
        await engine.run(CONSERVATIVE, now=NOW)
        history = await engine.get_history()
        assert [entry["action"] for entry in history] == ["consolidate"]
