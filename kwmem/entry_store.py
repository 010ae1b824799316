"""
Entry store using SQLite.

The entry store is the source of truth for:
- Entry identity (generated UUID)
- Content, keywords, category, source, metadata
- Timestamps (epoch milliseconds)
- The persisted keyword-graph snapshot

The snapshot lets the service skip a full rescan of entries on restart.
Both tables live in one database file, which is also the unit of
whole-file sync.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Optional

from .errors import StorageUnavailableError
from .types import (
    EntryDraft,
    KeywordNode,
    MemoryEntry,
    now_ms,
    validate_update_fields,
)

logger = logging.getLogger(__name__)

# SQLite retry: WAL mode + busy_timeout handle most write contention, but
# under heavy load the timeout can still expire. Retry with backoff before
# surfacing the error.
_DB_RETRY_ATTEMPTS = 3
_DB_RETRY_BASE_DELAY = 0.5  # seconds

_ENTRY_COLUMNS = "id, content, keywords, category, source, metadata, created_at, updated_at"
_FTS_ENTRY_COLUMNS = ", ".join(f"m.{c.strip()}" for c in _ENTRY_COLUMNS.split(","))


def _retry_on_locked(fn, *args, **kwargs):
    """Call fn with retry on 'database is locked' OperationalError."""
    for attempt in range(_DB_RETRY_ATTEMPTS):
        try:
            return fn(*args, **kwargs)
        except sqlite3.OperationalError as e:
            if "database is locked" in str(e) and attempt < _DB_RETRY_ATTEMPTS - 1:
                delay = _DB_RETRY_BASE_DELAY * (2 ** attempt)
                logger.warning("database is locked (attempt %d/%d), retrying in %.1fs",
                               attempt + 1, _DB_RETRY_ATTEMPTS, delay)
                time.sleep(delay)
            else:
                raise


class EntryStore:
    """
    SQLite-backed store for memory entries and the keyword-graph snapshot.

    Call init() before use. Missing ids are reported as None / False;
    sqlite errors surface as StorageUnavailableError.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = Path(store_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._has_fts = False

    @property
    def db_path(self) -> Path:
        return self._db_path

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def init(self) -> None:
        """Open the database and create tables. Safe to call repeatedly."""
        if self._conn is not None:
            return
        conn = None
        try:
            self._db_path.parent.mkdir(parents=True, exist_ok=True)
            # isolation_level=None gives us manual transaction control
            # so bulk writes can use BEGIN IMMEDIATE
            conn = sqlite3.connect(
                str(self._db_path), check_same_thread=False,
                isolation_level=None,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA busy_timeout=5000")
            self._create_schema(conn)
        except (sqlite3.Error, OSError) as e:
            if conn is not None:
                conn.close()
            raise StorageUnavailableError(f"Cannot open store {self._db_path}: {e}") from e

        self._conn = conn
        self._has_fts = self._create_fts(conn)
        logger.debug("Opened entry store %s", self._db_path)

    def _create_schema(self, conn: sqlite3.Connection) -> None:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS memories (
                id TEXT PRIMARY KEY,
                content TEXT NOT NULL,
                keywords TEXT NOT NULL,
                category TEXT,
                source TEXT,
                metadata TEXT,
                created_at INTEGER NOT NULL,
                updated_at INTEGER NOT NULL
            )
        """)

        # Index for category filters
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_category
            ON memories(category)
        """)

        # Index for recency ordering
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_memories_created
            ON memories(created_at)
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS keyword_graph (
                keyword TEXT PRIMARY KEY,
                weight REAL NOT NULL,
                connections TEXT NOT NULL
            )
        """)

    def _create_fts(self, conn: sqlite3.Connection) -> bool:
        """Create the FTS5 index and its sync triggers, if FTS5 is compiled in."""
        try:
            conn.execute("""
                CREATE VIRTUAL TABLE IF NOT EXISTS memories_fts USING fts5(
                    content,
                    keywords,
                    content='memories',
                    content_rowid='rowid'
                )
            """)
        except sqlite3.OperationalError as e:
            logger.warning("FTS5 not available, full-text search disabled: %s", e)
            return False

        conn.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_fts_ai AFTER INSERT ON memories BEGIN
                INSERT INTO memories_fts(rowid, content, keywords)
                VALUES (new.rowid, new.content, new.keywords);
            END
        """)
        conn.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_fts_ad AFTER DELETE ON memories BEGIN
                INSERT INTO memories_fts(memories_fts, rowid, content, keywords)
                VALUES ('delete', old.rowid, old.content, old.keywords);
            END
        """)
        conn.execute("""
            CREATE TRIGGER IF NOT EXISTS memories_fts_au AFTER UPDATE ON memories BEGIN
                INSERT INTO memories_fts(memories_fts, rowid, content, keywords)
                VALUES ('delete', old.rowid, old.content, old.keywords);
                INSERT INTO memories_fts(rowid, content, keywords)
                VALUES (new.rowid, new.content, new.keywords);
            END
        """)
        return True

    def _ensure_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StorageUnavailableError("Entry store not initialized")
        return self._conn

    def _new_id(self) -> str:
        return str(uuid.uuid4())

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        conn = self._ensure_conn()
        with self._lock:
            try:
                return _retry_on_locked(conn.execute, sql, params)
            except sqlite3.Error as e:
                raise StorageUnavailableError(f"Storage error: {e}") from e

    def _transaction(self, work) -> Any:
        """Run work(conn) inside a single BEGIN IMMEDIATE transaction."""
        conn = self._ensure_conn()
        with self._lock:
            try:
                _retry_on_locked(conn.execute, "BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageUnavailableError(f"Storage error: {e}") from e
            try:
                result = work(conn)
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageUnavailableError(f"Storage error: {e}") from e
            except Exception:
                conn.rollback()
                raise
        return result

    @staticmethod
    def _row_to_entry(row: sqlite3.Row) -> MemoryEntry:
        return MemoryEntry(
            id=row["id"],
            content=row["content"],
            keywords=json.loads(row["keywords"]),
            category=row["category"],
            source=row["source"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _entry_params(entry: MemoryEntry) -> tuple:
        return (
            entry.id,
            entry.content,
            json.dumps(list(entry.keywords), ensure_ascii=False),
            entry.category,
            entry.source,
            json.dumps(entry.metadata, ensure_ascii=False) if entry.metadata is not None else None,
            entry.created_at,
            entry.updated_at,
        )

    def _draft_to_entry(self, draft: EntryDraft, now: int) -> MemoryEntry:
        return MemoryEntry(
            id=self._new_id(),
            content=draft.content,
            keywords=list(draft.keywords),
            category=draft.category,
            source=draft.source,
            metadata=draft.metadata,
            created_at=now,
            updated_at=now,
        )

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def create(self, draft: EntryDraft) -> MemoryEntry:
        """
        Insert a new entry with a fresh id and timestamps.

        Returns:
            The stored MemoryEntry
        """
        entry = self._draft_to_entry(draft, now_ms())
        self._execute(f"""
            INSERT INTO memories ({_ENTRY_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, self._entry_params(entry))
        return entry

    def bulk_create(self, drafts: list[EntryDraft]) -> list[MemoryEntry]:
        """
        Insert many entries in one transaction.

        Either every draft is stored or none is.

        Returns:
            The stored entries, in draft order
        """
        if not drafts:
            return []
        now = now_ms()
        entries = [self._draft_to_entry(d, now) for d in drafts]

        def work(conn: sqlite3.Connection) -> list[MemoryEntry]:
            for entry in entries:
                conn.execute(f"""
                    INSERT INTO memories ({_ENTRY_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """, self._entry_params(entry))
            return entries

        stored = self._transaction(work)
        logger.info("Stored %d entries in one batch", len(stored))
        return stored

    def update(self, id: str, **fields: Any) -> Optional[MemoryEntry]:
        """
        Merge fields into an existing entry and bump updated_at.

        Args:
            id: Entry identifier
            **fields: Any of content, keywords, category, source, metadata

        Returns:
            The updated MemoryEntry, or None if the id does not exist
        """
        validate_update_fields(fields)
        if "keywords" in fields:
            fields["keywords"] = list(fields["keywords"])

        def work(conn: sqlite3.Connection) -> Optional[MemoryEntry]:
            row = conn.execute(
                f"SELECT {_ENTRY_COLUMNS} FROM memories WHERE id = ?", (id,)
            ).fetchone()
            if row is None:
                return None
            existing = self._row_to_entry(row)
            # updated_at never moves backwards, even if the clock does
            updated = existing.merged(fields, max(now_ms(), existing.updated_at))
            conn.execute("""
                UPDATE memories
                SET content = ?, keywords = ?, category = ?, source = ?, metadata = ?, updated_at = ?
                WHERE id = ?
            """, self._entry_params(updated)[1:6] + (updated.updated_at, id))
            return updated

        return self._transaction(work)

    def delete(self, id: str) -> bool:
        """
        Delete an entry.

        Returns:
            True if the entry existed and was deleted
        """
        cursor = self._execute("DELETE FROM memories WHERE id = ?", (id,))
        return cursor.rowcount > 0

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def read(self, id: str) -> Optional[MemoryEntry]:
        """
        Get an entry by id.

        Returns:
            MemoryEntry if found, None otherwise
        """
        row = self._execute(
            f"SELECT {_ENTRY_COLUMNS} FROM memories WHERE id = ?", (id,)
        ).fetchone()
        return self._row_to_entry(row) if row else None

    def list(
        self,
        category: Optional[str] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> list[MemoryEntry]:
        """
        List entries, newest first.

        Args:
            category: Only entries with this category
            limit: Maximum number to return (None for all)
            offset: Number of entries to skip

        Returns:
            Entries ordered by created_at descending
        """
        sql = f"SELECT {_ENTRY_COLUMNS} FROM memories"
        params: list[Any] = []
        if category:
            sql += " WHERE category = ?"
            params.append(category)
        # Entries created in the same millisecond fall back to insertion order
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([-1 if limit is None else limit, offset])

        cursor = self._execute(sql, tuple(params))
        return [self._row_to_entry(row) for row in cursor.fetchall()]

    def count(self) -> int:
        """Count stored entries."""
        return self._execute("SELECT COUNT(*) FROM memories").fetchone()[0]

    def search_fulltext(self, query: str, limit: int = 20) -> list[MemoryEntry]:
        """
        Full-text match over content and keywords.

        Returns an empty list when FTS5 is unavailable or the query is not
        valid FTS5 syntax.
        """
        if not self._has_fts:
            return []
        conn = self._ensure_conn()
        try:
            rows = conn.execute(f"""
                SELECT {_FTS_ENTRY_COLUMNS}
                FROM memories m
                JOIN memories_fts fts ON m.rowid = fts.rowid
                WHERE memories_fts MATCH ?
                ORDER BY rank
                LIMIT ?
            """, (query, limit)).fetchall()
        except sqlite3.OperationalError as e:
            logger.debug("Full-text query failed for %r: %s", query, e)
            return []
        return [self._row_to_entry(row) for row in rows]

    # -------------------------------------------------------------------------
    # Keyword Graph Snapshot
    # -------------------------------------------------------------------------

    def get_keyword_graph(self) -> dict[str, KeywordNode]:
        """Load the persisted graph snapshot (empty dict if none)."""
        cursor = self._execute("SELECT keyword, weight, connections FROM keyword_graph")
        nodes: dict[str, KeywordNode] = {}
        for row in cursor.fetchall():
            nodes[row["keyword"]] = KeywordNode(
                keyword=row["keyword"],
                weight=row["weight"],
                connections={k: int(v) for k, v in json.loads(row["connections"]).items()},
            )
        return nodes

    def update_keyword_graph(self, nodes: dict[str, KeywordNode]) -> None:
        """Replace the persisted graph snapshot in one transaction."""
        rows = [
            (keyword, node.weight, json.dumps(node.connections, ensure_ascii=False))
            for keyword, node in nodes.items()
        ]

        def work(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM keyword_graph")
            conn.executemany("""
                INSERT INTO keyword_graph (keyword, weight, connections)
                VALUES (?, ?, ?)
            """, rows)

        self._transaction(work)
        logger.debug("Saved keyword graph snapshot (%d nodes)", len(rows))

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def export_bytes(self) -> bytes:
        """
        A consistent image of the whole database, WAL contents included.

        Uses the online backup API, so readers held open by other
        connections cannot leave pages behind in the WAL.
        """
        conn = self._ensure_conn()
        tmp = self._db_path.with_name(self._db_path.name + ".export")
        tmp.unlink(missing_ok=True)
        try:
            with self._lock:
                dest = sqlite3.connect(str(tmp))
                try:
                    conn.backup(dest)
                finally:
                    dest.close()
            return tmp.read_bytes()
        except (sqlite3.Error, OSError) as e:
            raise StorageUnavailableError(f"Cannot export store: {e}") from e
        finally:
            tmp.unlink(missing_ok=True)

    def close(self) -> None:
        """Close the database connection."""
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def __enter__(self):
        self.init()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        self.close()
