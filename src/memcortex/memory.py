"""Memory records and the memory store.

A **memory** is one typed piece of agent knowledge.  Every memory shares a
small set of lifecycle fields (confidence, importance, timestamps, links,
archival and supersession state) which the decay, consolidation,
contradiction and retrieval components read and mutate.  Everything specific
to one memory type (a tribal memory's ``topic``, a workflow's ``steps``) lives
in an opaque :attr:`Memory.payload` dict the lifecycle engine never inspects
beyond text extraction.

Memory types fall into three families:

- **domain-agnostic** -- core, tribal, procedural, semantic, episodic,
  decision, insight, reference, preference.
- **code-specific** -- pattern_rationale, constraint_override,
  decision_context, code_smell.
- **universal** -- agent_spawn, entity, goal, feedback, workflow,
  conversation, incident, meeting, skill, environment.

This module provides:

* :class:`Memory` -- a dataclass mapping 1:1 to a row in ``memories``.
* :class:`MemoryQuery` -- a filter for :meth:`MemoryStore.search`.
* :class:`MemoryStore` -- async search/read/update/count plus create,
  relationship, access and cold-storage helpers over
  :class:`~memcortex.storage.Storage`.

Usage::

    from memcortex.storage import Storage
    from memcortex.memory import MemoryStore, MemoryQuery

    store = Storage()
    await store.initialize()
    memories = MemoryStore(store)
    m = await memories.create("tribal", "Never call the billing API in tests",
                              payload={"topic": "billing", "knowledge": "..."})
    recent = await memories.search(MemoryQuery(types=("tribal",)), limit=20)
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable

from memcortex.storage import Storage, serialize_embedding, utc_now_iso

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MEMORY_TYPES: tuple[str, ...] = (
    # domain-agnostic
    "core",
    "tribal",
    "procedural",
    "semantic",
    "episodic",
    "decision",
    "insight",
    "reference",
    "preference",
    # code-specific
    "pattern_rationale",
    "constraint_override",
    "decision_context",
    "code_smell",
    # universal
    "agent_spawn",
    "entity",
    "goal",
    "feedback",
    "workflow",
    "conversation",
    "incident",
    "meeting",
    "skill",
    "environment",
)
"""Allowed values for the ``memories.type`` column."""

EPHEMERAL_TYPES: tuple[str, ...] = ("episodic", "conversation")
"""Interaction records that consolidate into semantic knowledge."""

IMPORTANCE_LEVELS: tuple[str, ...] = ("low", "normal", "high", "critical")

COMPRESSION_LEVELS: tuple[str, ...] = ("full", "expanded", "summary")

RELATIONSHIP_TYPES: tuple[str, ...] = ("contradicts", "supports", "supersedes")

_LIST_FIELDS: tuple[str, ...] = (
    "linked_patterns",
    "linked_files",
    "linked_functions",
    "linked_constraints",
    "tags",
)

_UPDATABLE_FIELDS: frozenset[str] = frozenset({
    "summary",
    "payload",
    "confidence",
    "importance",
    "last_accessed",
    "last_validated",
    "access_count",
    "archived",
    "archive_reason",
    "superseded_by",
    "supersedes",
    "compression_level",
    *_LIST_FIELDS,
})


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse a stored timestamp into an aware UTC :class:`datetime`.

    Accepts ISO-8601 strings with or without an offset and SQLite's
    ``YYYY-MM-DD HH:MM:SS`` form.  Returns ``None`` for empty or
    unparseable input.
    """
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except (ValueError, TypeError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_between(earlier: datetime, later: datetime) -> float:
    """Fractional days from *earlier* to *later*, never negative."""
    return max(0.0, (later - earlier).total_seconds() / 86_400.0)


# ---------------------------------------------------------------------------
# Memory dataclass
# ---------------------------------------------------------------------------


@dataclass
class Memory:
    """In-memory representation of a single ``memories`` row.

    List columns (links and tags) and ``payload`` are stored as JSON strings
    in SQLite but exposed here as Python lists/dicts.

    Parameters
    ----------
    id:
        Hex UUID primary key.
    type:
        One of :data:`MEMORY_TYPES`.
    summary:
        Short human-readable text.
    payload:
        Type-specific fields.
    confidence:
        Belief strength in ``[0, 1]`` as stored (undecayed).
    importance:
        One of :data:`IMPORTANCE_LEVELS`.
    last_validated:
        When the memory was last confirmed; re-anchors decay.
    compression_level:
        Representation currently stored (see :data:`COMPRESSION_LEVELS`).
    """

    id: str
    type: str
    summary: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    confidence: float = 1.0
    importance: str = "normal"
    created_at: str = ""
    updated_at: str = ""
    last_accessed: str | None = None
    last_validated: str | None = None
    access_count: int = 0
    linked_patterns: list[str] = field(default_factory=list)
    linked_files: list[str] = field(default_factory=list)
    linked_functions: list[str] = field(default_factory=list)
    linked_constraints: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    archived: bool = False
    archive_reason: str | None = None
    superseded_by: str | None = None
    supersedes: str | None = None
    compression_level: str = "full"

    # ------------------------------------------------------------------
    # Factory helpers
    # ------------------------------------------------------------------

    @classmethod
    def from_row(cls, row: Any) -> Memory:
        """Create a :class:`Memory` from a :class:`sqlite3.Row`."""
        lists = {name: _load_json_list(row[name]) for name in _LIST_FIELDS}
        try:
            payload = json.loads(row["payload"]) if row["payload"] else {}
        except (json.JSONDecodeError, TypeError):
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        return cls(
            id=row["id"],
            type=row["type"],
            summary=row["summary"] or "",
            payload=payload,
            confidence=float(row["confidence"]),
            importance=row["importance"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_accessed=row["last_accessed"],
            last_validated=row["last_validated"],
            access_count=int(row["access_count"]),
            archived=bool(row["archived"]),
            archive_reason=row["archive_reason"],
            superseded_by=row["superseded_by"],
            supersedes=row["supersedes"],
            compression_level=row["compression_level"],
            **lists,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Memory:
        """Inverse of :meth:`to_dict`; unknown keys are ignored."""
        known = set(cls.__dataclass_fields__)
        kwargs = {k: v for k, v in data.items() if k in known}
        for name in _LIST_FIELDS:
            kwargs[name] = list(kwargs.get(name) or [])
        kwargs["payload"] = dict(kwargs.get("payload") or {})
        kwargs["archived"] = bool(kwargs.get("archived", False))
        return cls(**kwargs)

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a plain JSON-compatible dict."""
        return asdict(self)

    # ------------------------------------------------------------------
    # Convenience
    # ------------------------------------------------------------------

    @property
    def is_orphan(self) -> bool:
        """No linked patterns, files, or constraints."""
        return not (self.linked_patterns or self.linked_files or self.linked_constraints)

    def searchable_text(self) -> str:
        """Summary, tags and every string in the payload, space-joined."""
        parts = [self.summary, *self.tags]
        parts.extend(_payload_strings(self.payload))
        return " ".join(p for p in parts if p)


def _load_json_list(raw: str | None) -> list[str]:
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return []
    return [str(v) for v in value] if isinstance(value, list) else []


def _payload_strings(value: Any) -> Iterable[str]:
    if isinstance(value, str):
        yield value
    elif isinstance(value, dict):
        for v in value.values():
            yield from _payload_strings(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            yield from _payload_strings(v)


# ---------------------------------------------------------------------------
# Validation helpers (module-private)
# ---------------------------------------------------------------------------


def _validate_memory_type(memory_type: str) -> None:
    """Raise :class:`ValueError` if *memory_type* is not in :data:`MEMORY_TYPES`."""
    if memory_type not in MEMORY_TYPES:
        raise ValueError(
            f"Invalid memory type {memory_type!r}. "
            f"Must be one of: {', '.join(MEMORY_TYPES)}"
        )


def _validate_importance(importance: str) -> None:
    if importance not in IMPORTANCE_LEVELS:
        raise ValueError(
            f"Invalid importance {importance!r}. "
            f"Must be one of: {', '.join(IMPORTANCE_LEVELS)}"
        )


def _validate_confidence(confidence: float) -> None:
    if not 0.0 <= confidence <= 1.0:
        raise ValueError(
            f"Confidence must be between 0.0 and 1.0, got {confidence}"
        )


def _validate_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - _UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
    if "confidence" in fields:
        _validate_confidence(float(fields["confidence"]))
    if "importance" in fields:
        _validate_importance(fields["importance"])
    if "compression_level" in fields and fields["compression_level"] not in COMPRESSION_LEVELS:
        raise ValueError(f"Invalid compression level {fields['compression_level']!r}")
    if fields.get("access_count", 0) < 0:
        raise ValueError("access_count must be >= 0")


def _encode_value(name: str, value: Any) -> Any:
    if name in _LIST_FIELDS:
        return json.dumps(list(value)) if value else None
    if name == "payload":
        return json.dumps(value or {})
    if name == "archived":
        return int(bool(value))
    return value


# ---------------------------------------------------------------------------
# Connection-level helpers, usable inside Storage.execute_transaction
# ---------------------------------------------------------------------------


def read_memory(conn: sqlite3.Connection, memory_id: str) -> Memory | None:
    """Fetch a memory through a raw connection (archived included)."""
    row = conn.execute("SELECT * FROM memories WHERE id = ?", (memory_id,)).fetchone()
    return Memory.from_row(row) if row else None


def write_fields(conn: sqlite3.Connection, memory_id: str, fields: dict[str, Any]) -> bool:
    """Apply a partial update through a raw connection.

    Validates the fields, refuses supersession pointers that would close a
    cycle, and bumps ``updated_at``.

    Returns
    -------
    bool
        ``True`` if a row was updated, ``False`` if the id does not exist.
    """
    _validate_fields(fields)
    if fields.get("superseded_by"):
        _check_supersession_cycle(conn, memory_id, fields["superseded_by"])

    assignments = [f"{name} = ?" for name in fields]
    params = [_encode_value(name, value) for name, value in fields.items()]
    assignments.append("updated_at = ?")
    params.append(utc_now_iso())
    params.append(memory_id)
    cursor = conn.execute(
        f"UPDATE memories SET {', '.join(assignments)} WHERE id = ?",
        tuple(params),
    )
    return cursor.rowcount > 0


def insert_relationship(
    conn: sqlite3.Connection,
    source_id: str,
    target_id: str,
    relationship: str,
    strength: float = 1.0,
) -> None:
    """Insert a typed edge, ignoring an identical existing edge."""
    if relationship not in RELATIONSHIP_TYPES:
        raise ValueError(
            f"Invalid relationship {relationship!r}. "
            f"Must be one of: {', '.join(RELATIONSHIP_TYPES)}"
        )
    conn.execute(
        """
        INSERT OR IGNORE INTO memory_relationships
            (source_id, target_id, relationship, strength)
        VALUES (?, ?, ?, ?)
        """,
        (source_id, target_id, relationship, strength),
    )


def would_create_cycle(conn: sqlite3.Connection, memory_id: str, new_target: str) -> bool:
    """Whether pointing ``memory_id.superseded_by`` at *new_target* closes a cycle."""
    seen = {memory_id}
    current: str | None = new_target
    while current is not None:
        if current in seen:
            return True
        seen.add(current)
        row = conn.execute(
            "SELECT superseded_by FROM memories WHERE id = ?", (current,)
        ).fetchone()
        current = row["superseded_by"] if row else None
    return False


def _check_supersession_cycle(conn: sqlite3.Connection, memory_id: str, new_target: str) -> None:
    if would_create_cycle(conn, memory_id, new_target):
        raise ValueError(
            f"Supersession of {memory_id} by {new_target} would create a cycle"
        )


# ---------------------------------------------------------------------------
# Query filter
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class MemoryQuery:
    """Filter for :meth:`MemoryStore.search`.

    All criteria are ANDed.  ``None`` means "no constraint".
    """

    types: tuple[str, ...] | None = None
    include_archived: bool = False
    created_before: str | None = None
    created_after: str | None = None
    max_confidence: float | None = None
    tag: str | None = None
    file_prefix: str | None = None
    exclude_ids: tuple[str, ...] = ()
    oldest_first: bool = False

    def to_sql(self) -> tuple[str, list[Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if not self.include_archived:
            clauses.append("archived = 0")
        if self.types:
            clauses.append(f"type IN ({','.join('?' * len(self.types))})")
            params.extend(self.types)
        if self.created_before:
            clauses.append("created_at < ?")
            params.append(self.created_before)
        if self.created_after:
            clauses.append("created_at >= ?")
            params.append(self.created_after)
        if self.max_confidence is not None:
            clauses.append("confidence <= ?")
            params.append(self.max_confidence)
        if self.tag:
            clauses.append("EXISTS (SELECT 1 FROM json_each(memories.tags) WHERE value = ?)")
            params.append(self.tag)
        if self.file_prefix:
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(memories.linked_files) "
                "WHERE substr(value, 1, ?) = ?)"
            )
            params.extend((len(self.file_prefix), self.file_prefix))
        if self.exclude_ids:
            clauses.append(f"id NOT IN ({','.join('?' * len(self.exclude_ids))})")
            params.extend(self.exclude_ids)
        where = " AND ".join(clauses) if clauses else "1=1"
        order = "ASC" if self.oldest_first else "DESC"
        return f"SELECT * FROM memories WHERE {where} ORDER BY created_at {order}", params


# ---------------------------------------------------------------------------
# Memory store
# ---------------------------------------------------------------------------


class MemoryStore:
    """Async store for memory records.

    Parameters
    ----------
    storage:
        An initialised :class:`~memcortex.storage.Storage` instance.
    """

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    @property
    def storage(self) -> Storage:
        return self._storage

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create(
        self,
        type: str,
        summary: str,
        payload: dict[str, Any] | None = None,
        confidence: float = 1.0,
        importance: str = "normal",
        tags: list[str] | None = None,
        linked_patterns: list[str] | None = None,
        linked_files: list[str] | None = None,
        linked_functions: list[str] | None = None,
        linked_constraints: list[str] | None = None,
        created_at: str | None = None,
    ) -> Memory:
        """Insert a new memory and return it.

        Raises
        ------
        ValueError
            If *type*, *importance* or *confidence* is invalid.
        """
        _validate_memory_type(type)
        _validate_importance(importance)
        _validate_confidence(confidence)

        memory = Memory(
            id=uuid.uuid4().hex,
            type=type,
            summary=summary,
            payload=dict(payload or {}),
            confidence=confidence,
            importance=importance,
            created_at=created_at or utc_now_iso(),
            tags=list(tags or []),
            linked_patterns=list(linked_patterns or []),
            linked_files=list(linked_files or []),
            linked_functions=list(linked_functions or []),
            linked_constraints=list(linked_constraints or []),
        )
        memory.updated_at = memory.created_at

        def _do_insert(conn: sqlite3.Connection) -> None:
            insert_memory(conn, memory)

        await self._storage.execute_transaction(_do_insert)
        log.debug("Created %s memory %s", type, memory.id)
        return memory

    # ------------------------------------------------------------------
    # Read
    # ------------------------------------------------------------------

    async def read(self, memory_id: str) -> Memory | None:
        """Return the memory with *memory_id*, archived or not, or ``None``."""
        rows = await self._storage.execute(
            "SELECT * FROM memories WHERE id = ?", (memory_id,)
        )
        return Memory.from_row(rows[0]) if rows else None

    async def read_many(self, memory_ids: Iterable[str]) -> dict[str, Memory]:
        ids = list(dict.fromkeys(memory_ids))
        if not ids:
            return {}
        placeholders = ",".join("?" * len(ids))
        rows = await self._storage.execute(
            f"SELECT * FROM memories WHERE id IN ({placeholders})", tuple(ids)
        )
        return {row["id"]: Memory.from_row(row) for row in rows}

    async def search(self, query: MemoryQuery | None = None, limit: int = 100) -> list[Memory]:
        """Return memories matching *query*, newest first unless asked otherwise.

        Parameters
        ----------
        query:
            Filter criteria.  ``None`` matches every active memory.
        limit:
            Maximum number of memories to return.
        """
        sql, params = (query or MemoryQuery()).to_sql()
        rows = await self._storage.execute(f"{sql} LIMIT ?", (*params, limit))
        return [Memory.from_row(row) for row in rows]

    async def count(self, include_archived: bool = False) -> int:
        sql = "SELECT COUNT(*) AS cnt FROM memories"
        if not include_archived:
            sql += " WHERE archived = 0"
        rows = await self._storage.execute(sql)
        return int(rows[0]["cnt"])

    async def count_by_type(self) -> dict[str, int]:
        rows = await self._storage.execute(
            "SELECT type, COUNT(*) AS cnt FROM memories WHERE archived = 0 GROUP BY type"
        )
        return {row["type"]: int(row["cnt"]) for row in rows}

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    async def update(self, memory_id: str, **fields: Any) -> bool:
        """Apply a partial update to one memory.

        Returns
        -------
        bool
            ``False`` if no memory has *memory_id*.

        Raises
        ------
        ValueError
            On unknown or invalid fields, or a supersession cycle.
        """
        if not fields:
            return await self.read(memory_id) is not None

        def _do_update(conn: sqlite3.Connection) -> bool:
            return write_fields(conn, memory_id, fields)

        return await self._storage.execute_transaction(_do_update)

    async def archive(self, memory_id: str, reason: str) -> bool:
        return await self.update(memory_id, archived=True, archive_reason=reason)

    async def record_access_batch(self, memory_ids: list[str]) -> None:
        """Increment ``access_count`` and set ``last_accessed`` for many memories."""
        if not memory_ids:
            return
        placeholders = ",".join("?" * len(memory_ids))
        await self._storage.execute_write(
            f"UPDATE memories SET access_count = access_count + 1, "
            f"last_accessed = ? WHERE id IN ({placeholders})",
            (utc_now_iso(), *memory_ids),
        )

    # ------------------------------------------------------------------
    # Relationships
    # ------------------------------------------------------------------

    async def add_relationship(
        self,
        source_id: str,
        target_id: str,
        relationship: str,
        strength: float = 1.0,
    ) -> None:
        def _do_insert(conn: sqlite3.Connection) -> None:
            insert_relationship(conn, source_id, target_id, relationship, strength)

        await self._storage.execute_transaction(_do_insert)

    async def get_related_ids(
        self,
        memory_id: str,
        relationship: str,
        incoming: bool = True,
    ) -> list[str]:
        """Ids linked to *memory_id* by *relationship*.

        With ``incoming=True`` returns the sources of edges pointing at
        *memory_id* (e.g. the memories that support it).
        """
        if incoming:
            sql = (
                "SELECT source_id AS other FROM memory_relationships "
                "WHERE target_id = ? AND relationship = ?"
            )
        else:
            sql = (
                "SELECT target_id AS other FROM memory_relationships "
                "WHERE source_id = ? AND relationship = ?"
            )
        rows = await self._storage.execute(sql, (memory_id, relationship))
        return [row["other"] for row in rows]

    # ------------------------------------------------------------------
    # Cold storage
    # ------------------------------------------------------------------

    async def restore_full(self, memory_id: str) -> Memory | None:
        """Restore a compressed memory's full record from cold storage.

        Returns the restored memory, or ``None`` when no cold record exists.
        Lifecycle fields that changed after compression (confidence,
        access bookkeeping, archival) keep their current values.
        """

        def _do_restore(conn: sqlite3.Connection) -> Memory | None:
            row = conn.execute(
                "SELECT record FROM memory_cold_storage WHERE memory_id = ?",
                (memory_id,),
            ).fetchone()
            current = read_memory(conn, memory_id)
            if row is None or current is None:
                return None
            original = Memory.from_dict(json.loads(row["record"]))
            write_fields(
                conn,
                memory_id,
                {
                    "summary": original.summary,
                    "payload": original.payload,
                    "compression_level": "full",
                },
            )
            conn.execute("DELETE FROM memory_cold_storage WHERE memory_id = ?", (memory_id,))
            return read_memory(conn, memory_id)

        return await self._storage.execute_transaction(_do_restore)

    # ------------------------------------------------------------------
    # Embeddings
    # ------------------------------------------------------------------

    def check_embedding(self, embedding: list[float]) -> None:
        """Raise unless *embedding* can be stored.

        Raises
        ------
        RuntimeError
            If sqlite-vec is unavailable.
        ValueError
            If the vector length does not match ``embedding_dims``.
        """
        if not self._storage.vec_available:
            raise RuntimeError("sqlite-vec is not available; embeddings cannot be stored")
        if len(embedding) != self._storage.embedding_dims:
            raise ValueError(
                f"Embedding has {len(embedding)} dims, expected {self._storage.embedding_dims}"
            )

    async def set_embedding(self, memory_id: str, embedding: list[float]) -> None:
        """Attach an externally generated embedding to a memory."""
        self.check_embedding(embedding)
        blob = serialize_embedding(embedding)

        def _do_store(conn: sqlite3.Connection) -> None:
            conn.execute(
                "INSERT OR IGNORE INTO memory_vec_ids (memory_id) VALUES (?)",
                (memory_id,),
            )
            vec_id = conn.execute(
                "SELECT vec_id FROM memory_vec_ids WHERE memory_id = ?", (memory_id,)
            ).fetchone()["vec_id"]
            conn.execute("DELETE FROM memory_vec WHERE vec_id = ?", (vec_id,))
            conn.execute(
                "INSERT INTO memory_vec (vec_id, embedding) VALUES (?, ?)",
                (vec_id, blob),
            )

        await self._storage.execute_transaction(_do_store)

    async def get_embedding(self, memory_id: str) -> bytes | None:
        if not self._storage.vec_available:
            return None
        rows = await self._storage.execute(
            """
            SELECT v.embedding FROM memory_vec v
            JOIN memory_vec_ids i ON i.vec_id = v.vec_id
            WHERE i.memory_id = ?
            """,
            (memory_id,),
        )
        return rows[0]["embedding"] if rows else None

    async def nearest(self, embedding: bytes, k: int) -> list[tuple[str, float]]:
        """KNN over stored embeddings: ``(memory_id, cosine similarity)`` pairs."""
        rows = await self._storage.execute(
            """
            SELECT i.memory_id AS memory_id, v.distance AS distance
            FROM memory_vec v
            JOIN memory_vec_ids i ON i.vec_id = v.vec_id
            WHERE v.embedding MATCH ? AND k = ?
            ORDER BY v.distance
            """,
            (embedding, k),
        )
        return [(row["memory_id"], 1.0 - float(row["distance"])) for row in rows]


def insert_memory(conn: sqlite3.Connection, memory: Memory) -> None:
    """Insert a fully populated :class:`Memory` through a raw connection."""
    conn.execute(
        """
        INSERT INTO memories
            (id, type, summary, payload, confidence, importance,
             created_at, updated_at, last_accessed, last_validated, access_count,
             linked_patterns, linked_files, linked_functions, linked_constraints,
             tags, archived, archive_reason, superseded_by, supersedes,
             compression_level)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            memory.id,
            memory.type,
            memory.summary,
            json.dumps(memory.payload),
            memory.confidence,
            memory.importance,
            memory.created_at,
            memory.updated_at or memory.created_at,
            memory.last_accessed,
            memory.last_validated,
            memory.access_count,
            _encode_value("linked_patterns", memory.linked_patterns),
            _encode_value("linked_files", memory.linked_files),
            _encode_value("linked_functions", memory.linked_functions),
            _encode_value("linked_constraints", memory.linked_constraints),
            _encode_value("tags", memory.tags),
            int(memory.archived),
            memory.archive_reason,
            memory.superseded_by,
            memory.supersedes,
            memory.compression_level,
        ),
    )
