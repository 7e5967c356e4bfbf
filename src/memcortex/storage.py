"""SQLite storage engine for memcortex.

Manages a SQLite database holding memory records, their relationship graph,
cold storage for compressed records, the contradiction ledger, validation
history, and the consolidation audit log.  sqlite-vec backs an optional
vector table for similarity lookups over externally supplied embeddings.
All public methods are async-friendly, wrapping synchronous sqlite3 calls via
:func:`anyio.to_thread.run_sync`.

Connection strategy:
    - A single ``threading.Lock`` serialises write operations.
    - Thread-local persistent connections, one per thread pool worker.
    - WAL mode enables concurrent readers alongside a single writer.

Usage::

    from memcortex.storage import Storage

    store = Storage(config.db_path)
    await store.initialize()
    rows = await store.execute("SELECT id FROM memories WHERE archived = 0")
"""

from __future__ import annotations

import logging
import sqlite3
import struct
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, TypeVar

import anyio
import sqlite_vec

from memcortex.config import get_config

_T = TypeVar("_T")

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Embedding serialisation helpers
# ---------------------------------------------------------------------------


def serialize_embedding(vec: list[float]) -> bytes:
    """Pack a float vector into a compact binary representation.

    Parameters
    ----------
    vec:
        A list of floats matching ``embedding_dims``.

    Returns
    -------
    bytes
        Little-endian packed floats suitable for sqlite-vec queries.
    """
    return struct.pack(f"{len(vec)}f", *vec)


def deserialize_embedding(data: bytes) -> list[float]:
    """Unpack binary embedding data back into a list of floats."""
    count = len(data) // struct.calcsize("f")
    return list(struct.unpack(f"{count}f", data))


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string (the stored timestamp format)."""
    return datetime.now(tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# Schema DDL
# ---------------------------------------------------------------------------

_SCHEMA_SQL = """\
-- Memory records.  Type-specific fields live in the JSON payload.
CREATE TABLE IF NOT EXISTS memories (
    id TEXT PRIMARY KEY,
    type TEXT NOT NULL CHECK(type IN (
        'core','tribal','procedural','semantic','episodic','decision',
        'insight','reference','preference',
        'pattern_rationale','constraint_override','decision_context','code_smell',
        'agent_spawn','entity','goal','feedback','workflow','conversation',
        'incident','meeting','skill','environment'
    )),
    summary TEXT NOT NULL DEFAULT '',
    payload TEXT NOT NULL DEFAULT '{}',
    confidence REAL NOT NULL DEFAULT 1.0 CHECK(confidence >= 0.0 AND confidence <= 1.0),
    importance TEXT NOT NULL DEFAULT 'normal'
        CHECK(importance IN ('low','normal','high','critical')),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    last_accessed TEXT,
    last_validated TEXT,
    access_count INTEGER NOT NULL DEFAULT 0 CHECK(access_count >= 0),
    linked_patterns TEXT,
    linked_files TEXT,
    linked_functions TEXT,
    linked_constraints TEXT,
    tags TEXT,
    archived INTEGER NOT NULL DEFAULT 0,
    archive_reason TEXT,
    superseded_by TEXT,
    supersedes TEXT,
    compression_level TEXT NOT NULL DEFAULT 'full'
        CHECK(compression_level IN ('full','expanded','summary'))
);

-- Typed edges between memories
CREATE TABLE IF NOT EXISTS memory_relationships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL REFERENCES memories(id),
    target_id TEXT NOT NULL REFERENCES memories(id),
    relationship TEXT NOT NULL CHECK(relationship IN ('contradicts','supports','supersedes')),
    strength REAL NOT NULL DEFAULT 1.0,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(source_id, target_id, relationship)
);

-- Full records of memories whose stored representation was compressed
CREATE TABLE IF NOT EXISTS memory_cold_storage (
    memory_id TEXT PRIMARY KEY REFERENCES memories(id),
    record TEXT NOT NULL,
    stored_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Detected and declared contradictions
CREATE TABLE IF NOT EXISTS memory_contradictions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id TEXT NOT NULL,
    existing_memory_id TEXT NOT NULL,
    contradiction_type TEXT NOT NULL
        CHECK(contradiction_type IN ('direct','partial','supersedes','temporal')),
    confidence REAL NOT NULL,
    similarity REAL NOT NULL DEFAULT 0.0,
    evidence TEXT,
    suggested_action TEXT,
    resolution_status TEXT NOT NULL DEFAULT 'pending'
        CHECK(resolution_status IN ('pending','resolved','dismissed')),
    detected_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Feedback actions applied to memories
CREATE TABLE IF NOT EXISTS memory_validation_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id TEXT NOT NULL,
    action TEXT NOT NULL CHECK(action IN ('confirm','reject','modify')),
    feedback TEXT,
    previous_confidence REAL NOT NULL,
    new_confidence REAL NOT NULL,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Audit log for consolidation runs
CREATE TABLE IF NOT EXISTS consolidation_log (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    action TEXT NOT NULL,
    trigger_type TEXT,
    details TEXT,
    memories_affected TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Advisory locks for cross-process mutual exclusion
CREATE TABLE IF NOT EXISTS locks (
    name TEXT PRIMARY KEY,
    holder TEXT,
    acquired_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Maps vec0 integer rowids to memory ids
CREATE TABLE IF NOT EXISTS memory_vec_ids (
    vec_id INTEGER PRIMARY KEY AUTOINCREMENT,
    memory_id TEXT NOT NULL UNIQUE REFERENCES memories(id)
);
"""

# Vector table DDL -- only executed when sqlite-vec loads successfully.
_VEC_SCHEMA_SQL = """\
CREATE VIRTUAL TABLE IF NOT EXISTS memory_vec USING vec0(
    vec_id INTEGER PRIMARY KEY,
    embedding FLOAT[{dims}] distance_metric=cosine
);
"""

_INDEX_SQL = """\
CREATE INDEX IF NOT EXISTS idx_memories_type ON memories(type);
CREATE INDEX IF NOT EXISTS idx_memories_archived ON memories(archived);
CREATE INDEX IF NOT EXISTS idx_memories_type_archived ON memories(type, archived);
CREATE INDEX IF NOT EXISTS idx_memories_created_at ON memories(created_at) WHERE archived = 0;
CREATE INDEX IF NOT EXISTS idx_memories_confidence ON memories(confidence) WHERE archived = 0;
CREATE INDEX IF NOT EXISTS idx_rel_source ON memory_relationships(source_id, relationship);
CREATE INDEX IF NOT EXISTS idx_rel_target ON memory_relationships(target_id, relationship);
CREATE INDEX IF NOT EXISTS idx_contradictions_status ON memory_contradictions(resolution_status);
CREATE INDEX IF NOT EXISTS idx_validation_memory ON memory_validation_history(memory_id);
"""


# ---------------------------------------------------------------------------
# Storage class
# ---------------------------------------------------------------------------


class Storage:
    """Async-friendly SQLite storage backend.

    Parameters
    ----------
    db_path:
        Filesystem path for the SQLite database file.  Parent directories
        are created automatically during :meth:`initialize`.
    """

    def __init__(self, db_path: Path | None = None) -> None:
        cfg = get_config()
        self._db_path: Path = db_path or cfg.db_path
        self._backup_dir: Path = cfg.backup_dir
        self._backup_count: int = cfg.backup_count
        self._embedding_dims: int = cfg.embedding_dims
        self._write_lock = threading.Lock()
        self._local = threading.local()
        self._all_connections: list[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._initialized = False
        self._vec_available = False

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def db_path(self) -> Path:
        """Filesystem path of the SQLite database."""
        return self._db_path

    @property
    def vec_available(self) -> bool:
        """Whether the sqlite-vec extension loaded successfully."""
        return self._vec_available

    @property
    def embedding_dims(self) -> int:
        return self._embedding_dims

    # ------------------------------------------------------------------
    # Initialisation
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Prepare the database for use.

        This method is idempotent and safe to call multiple times.  It:

        1. Creates the database directory and backup directory.
        2. Probes for sqlite-vec support.
        3. Creates all tables, indexes and the vector table.
        4. Runs an automatic backup (pruning old backups).
        """
        await anyio.to_thread.run_sync(self._initialize_sync)
        self._initialized = True
        log.info(
            "Storage initialised at %s (vec=%s)",
            self._db_path,
            self._vec_available,
        )

    def _initialize_sync(self) -> None:
        """Synchronous initialisation run inside a worker thread."""
        sqlite_version = tuple(
            int(x) for x in sqlite3.sqlite_version.split(".")
        )
        if sqlite_version < (3, 35, 0):
            raise RuntimeError(
                f"SQLite {sqlite3.sqlite_version} is too old; memcortex requires >= 3.35.0 "
                "(needed for RETURNING clause support)"
            )

        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._backup_dir.mkdir(parents=True, exist_ok=True)

        self._vec_available = self._probe_vec_support()

        conn = self._open_connection()
        try:
            conn.executescript(_SCHEMA_SQL)
            if self._vec_available:
                conn.executescript(_VEC_SCHEMA_SQL.format(dims=self._embedding_dims))
            conn.executescript(_INDEX_SQL)
            conn.commit()
        finally:
            conn.close()

        self._backup_sync()

    def _probe_vec_support(self) -> bool:
        """Check whether sqlite-vec can be loaded in this environment.

        Returns ``True`` if the extension loaded, ``False`` otherwise.  The
        result is cached for the lifetime of the :class:`Storage` instance.
        """
        conn = sqlite3.connect(str(self._db_path))
        try:
            if not hasattr(conn, "enable_load_extension"):
                log.warning(
                    "sqlite3 module compiled without extension loading support; "
                    "vector similarity will fall back to lexical matching"
                )
                return False

            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)
            log.debug("sqlite-vec extension loaded successfully")
            return True
        except (AttributeError, OSError, sqlite3.OperationalError) as exc:
            log.warning(
                "sqlite-vec extension could not be loaded (%s); "
                "vector similarity will fall back to lexical matching",
                exc,
            )
            return False
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Connection factory
    # ------------------------------------------------------------------

    def _get_connection(self) -> sqlite3.Connection:
        """Return the thread-local persistent :class:`sqlite3.Connection`."""
        conn = getattr(self._local, "conn", None)
        if conn is None:
            conn = self._open_connection()
            self._local.conn = conn
            with self._connections_lock:
                self._all_connections.append(conn)
        return conn

    def _open_connection(self) -> sqlite3.Connection:
        """Open and configure a new :class:`sqlite3.Connection`.

        Every connection is configured with WAL journal mode, foreign key
        enforcement, sqlite-vec (when available) and :class:`sqlite3.Row`
        as the row factory.
        """
        conn = sqlite3.connect(
            str(self._db_path),
            timeout=30.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row

        if self._vec_available:
            conn.enable_load_extension(True)
            sqlite_vec.load(conn)
            conn.enable_load_extension(False)

        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        conn.execute("PRAGMA busy_timeout=5000")

        return conn

    # ------------------------------------------------------------------
    # Query execution
    # ------------------------------------------------------------------

    async def execute(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a read-only query and return all rows.

        Parameters
        ----------
        sql:
            SQL SELECT statement.
        params:
            Bind parameters (positional tuple or named dict).

        Returns
        -------
        list[sqlite3.Row]
            Result rows with dict-like column access.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_sync(sql, params),
        )

    def _execute_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        conn = self._get_connection()
        cursor = conn.execute(sql, params)
        return cursor.fetchall()

    async def execute_write(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        """Execute a write query under the write lock.

        Returns
        -------
        int
            The ``lastrowid`` of the executed statement.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_sync(sql, params),
        )

    def _execute_write_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> int:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                conn.commit()
                return cursor.lastrowid or 0
            except Exception:
                conn.rollback()
                raise

    async def execute_write_returning(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        """Execute a write query with a RETURNING clause under the write lock.

        Returns
        -------
        list[sqlite3.Row]
            Rows produced by the RETURNING clause.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_write_returning_sync(sql, params),
        )

    def _execute_write_returning_sync(
        self,
        sql: str,
        params: tuple | dict = (),
    ) -> list[sqlite3.Row]:
        with self._write_lock:
            conn = self._get_connection()
            try:
                cursor = conn.execute(sql, params)
                rows = cursor.fetchall()
                conn.commit()
                return rows
            except Exception:
                conn.rollback()
                raise

    async def execute_many(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        """Execute a statement for each set of parameters under the write lock."""
        await anyio.to_thread.run_sync(
            lambda: self._execute_many_sync(sql, params_list),
        )

    def _execute_many_sync(
        self,
        sql: str,
        params_list: list[tuple | dict],
    ) -> None:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.executemany(sql, params_list)
                conn.commit()
            except Exception:
                conn.rollback()
                raise

    async def execute_transaction(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        """Execute a callback inside a single ``BEGIN IMMEDIATE`` transaction.

        The write lock is held for the entire duration, and the callback
        receives a raw :class:`sqlite3.Connection` that is already inside
        a ``BEGIN IMMEDIATE`` transaction.  Commit happens on success and
        rollback on any exception, which is then re-raised.

        Parameters
        ----------
        fn:
            A synchronous callable that receives a
            :class:`sqlite3.Connection` and returns a value of type *T*.

        Returns
        -------
        T
            Whatever *fn* returns.
        """
        return await anyio.to_thread.run_sync(
            lambda: self._execute_transaction_sync(fn),
        )

    def _execute_transaction_sync(self, fn: Callable[[sqlite3.Connection], _T]) -> _T:
        with self._write_lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
                result = fn(conn)
                conn.commit()
                return result
            except Exception:
                conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Advisory lock helpers
    # ------------------------------------------------------------------

    @staticmethod
    def try_acquire_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> bool:
        """Attempt to acquire a named advisory lock inside a transaction.

        Stale locks older than 10 minutes are cleaned up before the
        acquisition attempt.

        Parameters
        ----------
        conn:
            A connection already inside an active transaction.
        name:
            The lock name (primary key in the ``locks`` table).
        holder:
            An identifier for the holder.  Defaults to a random UUID.

        Returns
        -------
        bool
            ``True`` if the lock was acquired, ``False`` if another
            holder already owns it.
        """
        if holder is None:
            holder = uuid.uuid4().hex

        conn.execute(
            "DELETE FROM locks WHERE name = ? AND acquired_at < datetime('now', '-10 minutes')",
            (name,),
        )

        try:
            conn.execute(
                "INSERT INTO locks (name, holder) VALUES (?, ?)",
                (name, holder),
            )
            return True
        except sqlite3.IntegrityError:
            return False

    @staticmethod
    def release_lock(conn: sqlite3.Connection, name: str, holder: str | None = None) -> None:
        """Release a named advisory lock inside a transaction.

        If *holder* is given the lock is only released when held by it.
        """
        if holder is not None:
            conn.execute(
                "DELETE FROM locks WHERE name = ? AND holder = ?",
                (name, holder),
            )
        else:
            conn.execute(
                "DELETE FROM locks WHERE name = ?",
                (name,),
            )

    # ------------------------------------------------------------------
    # Maintenance operations
    # ------------------------------------------------------------------

    async def backup(self) -> Path:
        """Create a timestamped backup of the database.

        Old backups beyond the configured retention count are deleted.

        Returns
        -------
        Path
            Filesystem path of the newly created backup file.
        """
        return await anyio.to_thread.run_sync(self._backup_sync)

    def _backup_sync(self) -> Path:
        if not self._db_path.exists():
            log.debug("No database file to back up yet")
            return self._db_path

        timestamp = datetime.now(tz=timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        backup_path = self._backup_dir / f"cortex_{timestamp}.db"

        src = sqlite3.connect(str(self._db_path))
        dst = sqlite3.connect(str(backup_path))
        try:
            src.backup(dst)
            log.info("Backup created: %s", backup_path)
        finally:
            dst.close()
            src.close()

        self._prune_backups()
        return backup_path

    def _prune_backups(self) -> None:
        """Delete old backups, keeping only the most recent ``backup_count``."""
        backups = sorted(
            self._backup_dir.glob("cortex_*.db"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        for old in backups[self._backup_count :]:
            try:
                old.unlink()
                log.debug("Pruned old backup: %s", old.name)
            except OSError as exc:
                log.warning("Failed to remove old backup %s: %s", old.name, exc)

    # ------------------------------------------------------------------
    # Database metadata
    # ------------------------------------------------------------------

    async def get_db_size_mb(self) -> float:
        """Return the database file size (plus WAL) in megabytes."""
        return await anyio.to_thread.run_sync(self._get_db_size_mb_sync)

    def _get_db_size_mb_sync(self) -> float:
        if not self._db_path.exists():
            return 0.0
        size_bytes = self._db_path.stat().st_size
        wal_path = self._db_path.with_suffix(".db-wal")
        if wal_path.exists():
            size_bytes += wal_path.stat().st_size
        return round(size_bytes / (1024 * 1024), 2)

    async def table_counts(self) -> dict[str, int]:
        """Return row counts for the core tables in one round-trip."""
        rows = await self.execute(
            """
            SELECT 'memories'                AS tbl, COUNT(*) AS cnt FROM memories
            UNION ALL
            SELECT 'memory_relationships',           COUNT(*)        FROM memory_relationships
            UNION ALL
            SELECT 'memory_contradictions',          COUNT(*)        FROM memory_contradictions
            UNION ALL
            SELECT 'memory_cold_storage',            COUNT(*)        FROM memory_cold_storage
            UNION ALL
            SELECT 'consolidation_log',              COUNT(*)        FROM consolidation_log
            """
        )
        return {row["tbl"]: row["cnt"] for row in rows}

    # ------------------------------------------------------------------
    # Context manager support
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close all persistent connections opened across all threads."""
        with self._connections_lock:
            conns = list(self._all_connections)
            self._all_connections.clear()

        for conn in conns:
            try:
                conn.close()
            except Exception as exc:
                log.warning("Failed to close connection: %s", exc)

        self._local.conn = None
        log.debug("Storage closed (%d connections released)", len(conns))

    async def __aenter__(self) -> Storage:
        await self.initialize()
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()
