"""Shared fixtures and helpers for the memcortex test suite."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest

import memcortex.config as config_module
from memcortex.config import get_config
from memcortex.cortex import Cortex
from memcortex.memory import Memory, MemoryStore
from memcortex.storage import Storage

NOW = datetime(2026, 6, 1, 12, 0, 0, tzinfo=timezone.utc)
"""Fixed reference time for tests that pass ``now`` explicitly."""


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Point the database and backups at ``tmp_path`` for every test.

    Tests never touch the user's real database at ``~/.memcortex``.
    """
    monkeypatch.setenv("MEMCORTEX_DB_PATH", str(tmp_path / "cortex.db"))
    monkeypatch.setenv("MEMCORTEX_BACKUP_DIR", str(tmp_path / "backups"))
    cfg = get_config(reload=True)
    yield cfg
    config_module._cached_config = None


@pytest.fixture
async def storage(tmp_path: Path) -> Storage:
    """Provide an initialized Storage instance backed by a temp directory."""
    s = Storage(tmp_path / "test.db")
    await s.initialize()
    yield s  # type: ignore[misc]
    await s.close()


@pytest.fixture
async def memories(storage: Storage) -> MemoryStore:
    return MemoryStore(storage)


@pytest.fixture
async def cortex(tmp_path: Path) -> Cortex:
    """Provide an initialized Cortex (scheduler not started)."""
    c = Cortex(db_path=tmp_path / "cortex.db")
    await c.initialize()
    yield c  # type: ignore[misc]
    await c.shutdown()


# ---------------------------------------------------------------------------
# Shared test helpers -- direct SQL insertion bypassing MemoryStore
# ---------------------------------------------------------------------------


def days_ago(days: float, now: datetime | None = None) -> str:
    """ISO timestamp *days* before *now* (default: the real current time)."""
    return ((now or datetime.now(tz=timezone.utc)) - timedelta(days=days)).isoformat()


def make_memory(**overrides: Any) -> Memory:
    """Build an in-memory :class:`Memory` with sensible defaults."""
    now = datetime.now(tz=timezone.utc).isoformat()
    data: dict[str, Any] = {
        "id": uuid.uuid4().hex,
        "type": "semantic",
        "summary": "test memory",
        "created_at": now,
        "updated_at": now,
    }
    data.update(overrides)
    return Memory(**data)


async def insert_memory_row(
    storage: Storage,
    summary: str = "test memory",
    memory_type: str = "semantic",
    payload: dict[str, Any] | None = None,
    confidence: float = 1.0,
    importance: str = "normal",
    created_at: str | None = None,
    last_accessed: str | None = None,
    last_validated: str | None = None,
    access_count: int = 0,
    tags: list[str] | None = None,
    linked_files: list[str] | None = None,
    archived: bool = False,
    superseded_by: str | None = None,
    compression_level: str = "full",
    memory_id: str | None = None,
) -> str:
    """Insert a memory directly via SQL.  Returns its id."""
    memory_id = memory_id or uuid.uuid4().hex
    created_at = created_at or datetime.now(tz=timezone.utc).isoformat()
    await storage.execute_write(
        """
        INSERT INTO memories
            (id, type, summary, payload, confidence, importance, created_at,
             updated_at, last_accessed, last_validated, access_count, tags,
             linked_files, archived, superseded_by, compression_level)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            memory_id,
            memory_type,
            summary,
            json.dumps(payload or {}),
            confidence,
            importance,
            created_at,
            created_at,
            last_accessed,
            last_validated,
            access_count,
            json.dumps(tags) if tags else None,
            json.dumps(linked_files) if linked_files else None,
            int(archived),
            superseded_by,
            compression_level,
        ),
    )
    return memory_id


async def insert_relationship_row(
    storage: Storage,
    source_id: str,
    target_id: str,
    relationship: str = "supports",
    strength: float = 1.0,
) -> int:
    """Insert a relationship edge directly via SQL."""
    return await storage.execute_write(
        """
        INSERT INTO memory_relationships (source_id, target_id, relationship, strength)
        VALUES (?, ?, ?, ?)
        """,
        (source_id, target_id, relationship, strength),
    )


async def fetch_memory(storage: Storage, memory_id: str) -> Memory:
    rows = await storage.execute("SELECT * FROM memories WHERE id = ?", (memory_id,))
    assert rows, f"memory {memory_id} not found"
    return Memory.from_row(rows[0])


async def count_rows(storage: Storage, table: str, where: str = "1=1", params: tuple = ()) -> int:
    rows = await storage.execute(f"SELECT COUNT(*) AS cnt FROM {table} WHERE {where}", params)
    return rows[0]["cnt"]
