"""Tests for the Memory dataclass and the MemoryStore."""

from __future__ import annotations

import pytest

from memcortex.memory import Memory, MemoryQuery, MemoryStore, parse_timestamp
from memcortex.storage import Storage
from tests.conftest import count_rows, days_ago, fetch_memory, insert_memory_row


class TestMemoryDataclass:
    def test_dict_round_trip(self) -> None:
        memory = Memory(
            id="m1",
            type="tribal",
            summary="s",
            payload={"topic": "billing"},
            tags=["a"],
            archived=True,
        )
        assert Memory.from_dict(memory.to_dict()) == memory

    def test_from_dict_ignores_unknown_keys(self) -> None:
        memory = Memory.from_dict({"id": "m", "type": "core", "bogus": 1})
        assert memory.id == "m"

    def test_orphan(self) -> None:
        assert Memory(id="a", type="core").is_orphan
        assert not Memory(id="a", type="core", linked_files=["x.py"]).is_orphan

    def test_searchable_text_includes_payload_strings(self) -> None:
        memory = Memory(
            id="a",
            type="workflow",
            summary="Deploy",
            tags=["ci"],
            payload={"steps": [{"action": "build image"}], "count": 3},
        )
        text = memory.searchable_text()
        assert "Deploy" in text and "ci" in text and "build image" in text

    def test_parse_timestamp_forms(self) -> None:
        assert parse_timestamp("2026-01-01 10:00:00").tzinfo is not None
        assert parse_timestamp("2026-01-01T10:00:00Z") is not None
        assert parse_timestamp("garbage") is None
        assert parse_timestamp(None) is None


class TestCreateAndRead:
    async def test_create_persists(self, memories: MemoryStore) -> None:
        memory = await memories.create(
            "tribal",
            "Never deploy on Fridays",
            payload={"topic": "deploys"},
            tags=["ops"],
        )
        loaded = await memories.read(memory.id)
        assert loaded is not None
        assert loaded.summary == "Never deploy on Fridays"
        assert loaded.payload == {"topic": "deploys"}
        assert loaded.tags == ["ops"]
        assert loaded.created_at == loaded.updated_at

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"type": "gossip"},
            {"importance": "urgent"},
            {"confidence": 1.5},
        ],
    )
    async def test_create_validates(self, memories: MemoryStore, kwargs: dict) -> None:
        args = {"type": "semantic", "summary": "x", **kwargs}
        with pytest.raises(ValueError):
            await memories.create(**args)
        assert await memories.count(include_archived=True) == 0

    async def test_read_missing(self, memories: MemoryStore) -> None:
        assert await memories.read("nope") is None

    async def test_read_many(self, memories: MemoryStore, storage: Storage) -> None:
        a = await insert_memory_row(storage)
        b = await insert_memory_row(storage)
        found = await memories.read_many([a, b, "missing", a])
        assert set(found) == {a, b}


class TestSearch:
    async def test_excludes_archived_by_default(self, memories: MemoryStore, storage: Storage) -> None:
        await insert_memory_row(storage, summary="live")
        await insert_memory_row(storage, summary="gone", archived=True)
        assert [m.summary for m in await memories.search()] == ["live"]
        assert len(await memories.search(MemoryQuery(include_archived=True))) == 2

    async def test_filters(self, memories: MemoryStore, storage: Storage) -> None:
        target = await insert_memory_row(
            storage,
            memory_type="tribal",
            tags=["billing"],
            linked_files=["src/billing/api.py"],
            created_at=days_ago(20),
        )
        await insert_memory_row(storage, memory_type="tribal", tags=["auth"])
        await insert_memory_row(storage, memory_type="semantic", tags=["billing"])

        by_type_and_tag = await memories.search(MemoryQuery(types=("tribal",), tag="billing"))
        assert [m.id for m in by_type_and_tag] == [target]

        by_prefix = await memories.search(MemoryQuery(file_prefix="src/billing"))
        assert [m.id for m in by_prefix] == [target]

        older = await memories.search(MemoryQuery(created_before=days_ago(10)))
        assert [m.id for m in older] == [target]

    async def test_file_prefix_treats_wildcards_literally(
        self, memories: MemoryStore, storage: Storage
    ) -> None:
        await insert_memory_row(storage, linked_files=["src/a_b.py"])
        assert await memories.search(MemoryQuery(file_prefix="src/a%")) == []

    async def test_exclude_ids_and_order(self, memories: MemoryStore, storage: Storage) -> None:
        old = await insert_memory_row(storage, created_at=days_ago(5))
        new = await insert_memory_row(storage, created_at=days_ago(1))
        skip = await insert_memory_row(storage, created_at=days_ago(3))

        newest_first = await memories.search(MemoryQuery(exclude_ids=(skip,)))
        assert [m.id for m in newest_first] == [new, old]

        oldest_first = await memories.search(MemoryQuery(oldest_first=True))
        assert [m.id for m in oldest_first] == [old, skip, new]

    async def test_count_by_type(self, memories: MemoryStore, storage: Storage) -> None:
        await insert_memory_row(storage, memory_type="tribal")
        await insert_memory_row(storage, memory_type="tribal")
        await insert_memory_row(storage, memory_type="goal", archived=True)
        assert await memories.count_by_type() == {"tribal": 2}


class TestUpdate:
    async def test_partial_update(self, memories: MemoryStore, storage: Storage) -> None:
        memory_id = await insert_memory_row(storage, confidence=0.5)
        assert await memories.update(memory_id, confidence=0.8, tags=["x"])
        memory = await fetch_memory(storage, memory_id)
        assert memory.confidence == pytest.approx(0.8)
        assert memory.tags == ["x"]

    async def test_update_missing_returns_false(self, memories: MemoryStore) -> None:
        assert await memories.update("missing", confidence=0.5) is False

    async def test_rejects_unknown_field(self, memories: MemoryStore, storage: Storage) -> None:
        memory_id = await insert_memory_row(storage)
        with pytest.raises(ValueError, match="Cannot update"):
            await memories.update(memory_id, id="other")

    async def test_rejects_out_of_range_confidence(
        self, memories: MemoryStore, storage: Storage
    ) -> None:
        memory_id = await insert_memory_row(storage)
        with pytest.raises(ValueError):
            await memories.update(memory_id, confidence=-0.1)

    async def test_supersession_cycle_rejected(self, memories: MemoryStore, storage: Storage) -> None:
        a = await insert_memory_row(storage)
        b = await insert_memory_row(storage, superseded_by=a)
        with pytest.raises(ValueError, match="cycle"):
            await memories.update(a, superseded_by=b)
        assert (await fetch_memory(storage, a)).superseded_by is None

    async def test_archive(self, memories: MemoryStore, storage: Storage) -> None:
        memory_id = await insert_memory_row(storage)
        await memories.archive(memory_id, "obsolete")
        memory = await fetch_memory(storage, memory_id)
        assert memory.archived
        assert memory.archive_reason == "obsolete"

    async def test_record_access_batch(self, memories: MemoryStore, storage: Storage) -> None:
        a = await insert_memory_row(storage, access_count=2)
        b = await insert_memory_row(storage)
        await memories.record_access_batch([a, b])
        assert (await fetch_memory(storage, a)).access_count == 3
        assert (await fetch_memory(storage, b)).last_accessed is not None


class TestRelationships:
    async def test_add_and_query(self, memories: MemoryStore, storage: Storage) -> None:
        a = await insert_memory_row(storage)
        b = await insert_memory_row(storage)
        await memories.add_relationship(a, b, "supports")
        await memories.add_relationship(a, b, "supports")

        assert await memories.get_related_ids(b, "supports") == [a]
        assert await memories.get_related_ids(a, "supports", incoming=False) == [b]
        assert await count_rows(storage, "memory_relationships") == 1

    async def test_unknown_relationship(self, memories: MemoryStore, storage: Storage) -> None:
        a = await insert_memory_row(storage)
        with pytest.raises(ValueError):
            await memories.add_relationship(a, a, "likes")


class TestColdStorage:
    async def test_restore_without_cold_record(self, memories: MemoryStore, storage: Storage) -> None:
        memory_id = await insert_memory_row(storage)
        assert await memories.restore_full(memory_id) is None
