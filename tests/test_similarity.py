"""Tests for lexical similarity and the store-backed provider."""

from __future__ import annotations

import pytest

from memcortex.config import get_config
from memcortex.memory import MemoryStore
from memcortex.similarity import StoreSimilarity, significant_words, text_similarity
from memcortex.storage import Storage
from tests.conftest import fetch_memory, insert_memory_row


class TestTextSimilarity:
    def test_significant_words_skip_short_tokens(self) -> None:
        assert significant_words("Use the new API for auth") == {"auth"}

    def test_jaccard(self) -> None:
        score = text_similarity("deploy service fridays", "deploy service mondays")
        assert score == pytest.approx(0.5)

    def test_case_insensitive(self) -> None:
        assert text_similarity("Billing Retries", "billing retries") == pytest.approx(1.0)

    def test_no_words(self) -> None:
        assert text_similarity("a b", "") == 0.0


class TestStoreSimilarity:
    async def test_lexical_fallback(self, memories: MemoryStore, storage: Storage) -> None:
        probe_id = await insert_memory_row(storage, summary="billing retries need idempotency keys")
        close = await insert_memory_row(storage, summary="billing retries need idempotency tokens")
        await insert_memory_row(storage, summary="frontend bundles should be split by route")
        await insert_memory_row(
            storage, summary="billing retries need idempotency keys", archived=True
        )

        provider = StoreSimilarity(memories)
        probe = await fetch_memory(storage, probe_id)
        found = await provider.find_similar(probe, limit=10, min_similarity=0.5)

        assert [m.id for m, _ in found] == [close]
        assert found[0][1] == pytest.approx(4 / 6)

    async def test_limit_and_ordering(self, memories: MemoryStore, storage: Storage) -> None:
        probe_id = await insert_memory_row(storage, summary="cache invalidation happens on write")
        exact = await insert_memory_row(storage, summary="cache invalidation happens on write")
        partial = await insert_memory_row(storage, summary="cache invalidation happens nightly")

        provider = StoreSimilarity(memories)
        probe = await fetch_memory(storage, probe_id)
        found = await provider.find_similar(probe, limit=2, min_similarity=0.1)

        assert [m.id for m, _ in found] == [exact, partial]
        one = await provider.find_similar(probe, limit=1, min_similarity=0.1)
        assert [m.id for m, _ in one] == [exact]

    async def test_empty_text_finds_nothing(self, memories: MemoryStore, storage: Storage) -> None:
        probe_id = await insert_memory_row(storage, summary="a b")
        await insert_memory_row(storage, summary="a b")
        probe = await fetch_memory(storage, probe_id)
        assert await StoreSimilarity(memories).find_similar(probe, 5, 0.0) == []


@pytest.fixture
async def vec_memories(tmp_path, monkeypatch: pytest.MonkeyPatch) -> MemoryStore:
    """A store with three-dimensional embeddings; skipped without sqlite-vec."""
    monkeypatch.setenv("MEMCORTEX_EMBEDDING_DIMS", "3")
    get_config(reload=True)
    s = Storage(tmp_path / "vec.db")
    await s.initialize()
    if not s.vec_available:
        await s.close()
        pytest.skip("sqlite-vec is not available")
    yield MemoryStore(s)  # type: ignore[misc]
    await s.close()


class TestVectorSimilarity:
    async def test_nearest_neighbours_exclude_self(self, vec_memories: MemoryStore) -> None:
        anchor = await vec_memories.create("semantic", "unrelated words alpha")
        close = await vec_memories.create("semantic", "unrelated words beta")
        middle = await vec_memories.create("semantic", "unrelated words gamma")
        far = await vec_memories.create("semantic", "unrelated words delta")
        await vec_memories.set_embedding(anchor.id, [1.0, 0.0, 0.0])
        await vec_memories.set_embedding(close.id, [0.9, 0.1, 0.0])
        await vec_memories.set_embedding(middle.id, [0.5, 0.5, 0.0])
        await vec_memories.set_embedding(far.id, [0.0, 0.0, 1.0])

        found = await StoreSimilarity(vec_memories).find_similar(anchor, limit=5, min_similarity=0.5)

        assert [m.id for m, _ in found] == [close.id, middle.id]
        assert found[0][1] > found[1][1]
        assert found[1][1] == pytest.approx(0.7071, abs=1e-3)

    async def test_archived_neighbours_are_skipped(self, vec_memories: MemoryStore) -> None:
        anchor = await vec_memories.create("semantic", "first")
        twin = await vec_memories.create("semantic", "second")
        await vec_memories.set_embedding(anchor.id, [0.0, 1.0, 0.0])
        await vec_memories.set_embedding(twin.id, [0.0, 1.0, 0.0])
        await vec_memories.update(twin.id, archived=True)

        assert await StoreSimilarity(vec_memories).find_similar(anchor, 5, 0.0) == []

    async def test_wrong_dimensions_rejected(self, vec_memories: MemoryStore) -> None:
        memory = await vec_memories.create("semantic", "anything")
        with pytest.raises(ValueError, match="expected 3"):
            await vec_memories.set_embedding(memory.id, [1.0, 0.0])
        assert await vec_memories.get_embedding(memory.id) is None
