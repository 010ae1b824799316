"""
MemoryService: keyword memory with graph-maintained CRUD, search, import and sync.

The service owns one storage backend, one in-memory KeywordGraph and
optionally one sync backend. Every store access and every sync runs under a
single re-entrant lock, so the read-then-write graph maintenance cannot
interleave with another mutation, and nothing touches the store while a pull
reopens it.

Example:
    with MemoryService("~/.kwmem") as svc:
        svc.create("Use WAL mode for concurrent readers", ["sqlite", "wal"])
        results = svc.search("sqlite concurrency")
"""

from __future__ import annotations

import enum
import logging
import os
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .config import StoreConfig, load_or_create_config
from .entry_store import EntryStore
from .errors import (
    KwmemError,
    ServiceNotReadyError,
    StorageUnavailableError,
    SyncError,
)
from .graph import KeywordGraph
from .importer import FileImporter
from .protocol import StorageBackendProtocol, SyncBackendProtocol
from .sync import create_sync_backend
from .types import EntryDraft, GraphStats, MemoryEntry, SearchResult, validate_update_fields

logger = logging.getLogger(__name__)

# Any non-word character separates tokens, CJK punctuation included. A period
# survives only between two word characters, so "v1.2" or "index.md" stay whole.
_TOKEN_SPLIT_RE = re.compile(r"(?:[^\w.]|(?<!\w)\.|\.(?!\w))+")

_SQLITE_HEADER = b"SQLite format 3\x00"


def tokenize(query: str) -> list[str]:
    """Lower-case and split a query into keyword-like tokens."""
    return [t for t in _TOKEN_SPLIT_RE.split(query.lower()) if t]


class ServiceState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    CLOSING = "closing"
    CLOSED = "closed"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a push or pull. Failures are reported, not raised."""
    success: bool
    error: Optional[str] = None


@dataclass
class ImportResult:
    """Outcome of a directory import."""
    imported: int = 0
    entries: list[MemoryEntry] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)


class MemoryService:
    """
    Keyword memory service.

    Call init() (or use as a context manager) before any other operation.
    Operations on a service that is not ready raise ServiceNotReadyError.
    """

    def __init__(
        self,
        store_path: Optional[str | Path] = None,
        *,
        config: Optional[StoreConfig] = None,
        storage: Optional[StorageBackendProtocol] = None,
        sync: Optional[SyncBackendProtocol] = None,
        ops_log: bool = False,
    ) -> None:
        """
        Args:
            store_path: Store directory. Uses the default if not specified.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            storage: Injected storage backend (skips EntryStore creation).
            sync: Injected sync backend (skips creation from config.sync).
            ops_log: Attach the rotating operations log while the service is open.
        """
        if config is not None:
            self._config = config
        else:
            path = Path(store_path).expanduser() if store_path is not None else None
            self._config = load_or_create_config(path)

        self._storage = storage if storage is not None else EntryStore(self._config.db_path)
        self._sync = sync if sync is not None else create_sync_backend(self._config.sync)
        self._graph = KeywordGraph()

        self._lock = threading.RLock()
        self._state = ServiceState.UNINITIALIZED
        self._ops_log = ops_log
        self._ops_log_handler: Optional[logging.Handler] = None

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def state(self) -> ServiceState:
        return self._state

    @property
    def graph(self) -> KeywordGraph:
        return self._graph

    @property
    def sync_configured(self) -> bool:
        return self._sync is not None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def init(self) -> None:
        """
        Open storage and sync, then load the graph snapshot or rebuild it.

        A no-op when already ready. On failure the service returns to
        UNINITIALIZED and the error is raised as StorageUnavailableError.
        """
        with self._lock:
            if self._state == ServiceState.READY:
                return
            if self._ops_log and self._ops_log_handler is None:
                from .logging_config import configure_ops_log
                self._ops_log_handler = configure_ops_log(self._config.path)

            self._open_store()

            if self._sync is not None:
                try:
                    self._sync.init()
                except SyncError as e:
                    # Local operation doesn't depend on the remote being reachable
                    logger.warning("Sync backend unavailable: %s", e)

    def _open_store(self) -> None:
        self._state = ServiceState.INITIALIZING
        try:
            self._storage.init()
            self._load_graph()
        except Exception as e:
            self._state = ServiceState.UNINITIALIZED
            self._storage.close()
            if isinstance(e, StorageUnavailableError):
                raise
            raise StorageUnavailableError(f"Cannot initialize store: {e}") from e
        self._state = ServiceState.READY

    def _load_graph(self) -> None:
        snapshot = self._storage.get_keyword_graph()
        if snapshot:
            self._graph = KeywordGraph(nodes=snapshot)
            self._graph.index_entries(self._storage.list(limit=None))
            logger.debug("Loaded keyword graph snapshot (%d nodes)", len(snapshot))
        else:
            self._graph = KeywordGraph()
            self._graph.build_from_entries(self._storage.list(limit=None))
            logger.info("Rebuilt keyword graph from entries (%d nodes)", len(self._graph))

    def _require_ready(self) -> None:
        if self._state != ServiceState.READY:
            raise ServiceNotReadyError(f"Memory service not ready (state: {self._state.value})")

    def close(self) -> None:
        """Persist the graph snapshot and close storage. No-op unless ready."""
        with self._lock:
            if self._state != ServiceState.READY:
                return
            self._state = ServiceState.CLOSING
            try:
                self._storage.update_keyword_graph(self._graph.export())
            except StorageUnavailableError as e:
                logger.warning("Failed to save keyword graph on close: %s", e)
            finally:
                self._storage.close()
                if self._sync is not None:
                    self._sync.close()
                self._state = ServiceState.CLOSED

            if self._ops_log_handler is not None:
                from .logging_config import remove_ops_log
                remove_ops_log(self._ops_log_handler)
                self._ops_log_handler = None

    def __enter__(self):
        self.init()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    # -------------------------------------------------------------------------
    # CRUD
    # -------------------------------------------------------------------------

    def create(
        self,
        content: str,
        keywords: list[str],
        *,
        category: Optional[str] = None,
        source: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> MemoryEntry:
        """Store a new entry and index its keywords."""
        draft = EntryDraft(
            content=content,
            keywords=keywords,
            category=category,
            source=source,
            metadata=metadata,
        )
        return self._create_from_draft(draft)

    def _create_from_draft(self, draft: EntryDraft) -> MemoryEntry:
        with self._lock:
            self._require_ready()
            entry = self._storage.create(draft)
            self._graph.add_entry(entry)
        logger.info("Created %s (%d keywords)", entry.id, len(entry.keywords))
        return entry

    def read(self, id: str) -> Optional[MemoryEntry]:
        with self._lock:
            self._require_ready()
            return self._storage.read(id)

    def update(self, id: str, **fields: Any) -> Optional[MemoryEntry]:
        """
        Merge fields into an entry and re-index it.

        Returns:
            The updated entry, or None if the id does not exist
        """
        validate_update_fields(fields)
        with self._lock:
            self._require_ready()
            existing = self._storage.read(id)
            if existing is None:
                return None
            self._graph.remove_entry(existing)
            updated = self._storage.update(id, **fields)
            if updated is not None:
                self._graph.add_entry(updated)
        logger.info("Updated %s (%s)", id, ", ".join(sorted(fields)))
        return updated

    def delete(self, id: str) -> bool:
        """Delete an entry. Returns True if it existed."""
        with self._lock:
            self._require_ready()
            existing = self._storage.read(id)
            if existing is not None:
                self._graph.remove_entry(existing)
            deleted = self._storage.delete(id)
        if deleted:
            logger.info("Deleted %s", id)
        return deleted

    def list(
        self,
        category: Optional[str] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> list[MemoryEntry]:
        """Entries newest first, optionally filtered by category."""
        with self._lock:
            self._require_ready()
            return self._storage.list(category=category, limit=limit, offset=offset)

    def count(self) -> int:
        with self._lock:
            self._require_ready()
            return self._storage.count()

    def bulk_create(self, drafts: list[EntryDraft]) -> list[MemoryEntry]:
        """Store many entries in one transaction, then index them."""
        with self._lock:
            self._require_ready()
            created = self._storage.bulk_create(drafts)
            for entry in created:
                self._graph.add_entry(entry)
        return created

    # -------------------------------------------------------------------------
    # Import
    # -------------------------------------------------------------------------

    def _importer(self, overrides: dict[str, Any]) -> FileImporter:
        defaults = self._config.importer
        options = {
            "extensions": defaults.extensions,
            "max_file_size": defaults.max_file_size,
            "category": defaults.category,
            "recursive": defaults.recursive,
        }
        options.update({k: v for k, v in overrides.items() if v is not None})
        return FileImporter(**options)

    def import_directory(self, path: str | Path, **overrides: Any) -> ImportResult:
        """
        Import every eligible file under a directory.

        Per-file failures are collected in ImportResult.errors; the files that
        could be read are stored in a single transaction.

        Args:
            path: Directory to scan
            **overrides: extensions, max_file_size, category, recursive, keyword_extractor

        Raises:
            ImportFileError: If path is not a directory
        """
        importer = self._importer(overrides)
        with self._lock:
            self._require_ready()
            batch = importer.import_directory(path)
            entries = self.bulk_create(batch.drafts) if batch.drafts else []
        logger.info("Imported %d entries from %s (%d errors)", len(entries), path, len(batch.errors))
        return ImportResult(imported=len(entries), entries=entries, errors=batch.errors)

    def import_file(self, path: str | Path, **overrides: Any) -> Optional[MemoryEntry]:
        """
        Import a single file.

        Returns:
            The stored entry, or None if the extension is not allowed

        Raises:
            ImportFileError: If the file is missing, too large or not UTF-8 text
        """
        importer = self._importer(overrides)
        self._require_ready()
        draft = importer.import_file(path)
        if draft is None:
            return None
        return self._create_from_draft(draft)

    # -------------------------------------------------------------------------
    # Search and graph queries
    # -------------------------------------------------------------------------

    def search(
        self,
        query: str,
        max_results: Optional[int] = None,
        min_score: Optional[float] = None,
        category: Optional[str] = None,
        use_expansion: Optional[bool] = None,
    ) -> list[SearchResult]:
        """
        Find entries related to a free-text query through the keyword graph.

        Unset options fall back to the store's [search] configuration.
        """
        settings = self._config.search
        tokens = tokenize(query)
        with self._lock:
            self._require_ready()
            if not tokens:
                return []
            candidates = self._storage.list(category=category, limit=settings.candidate_limit)
            return self._graph.search(
                tokens,
                candidates,
                max_results=settings.max_results if max_results is None else max_results,
                min_score=settings.min_score if min_score is None else min_score,
                use_expansion=settings.use_graph_expansion if use_expansion is None else use_expansion,
                max_depth=settings.max_depth,
                max_expansion=settings.max_expansion,
            )

    def search_fulltext(self, query: str, limit: int = 20) -> list[MemoryEntry]:
        """Full-text match over content and keywords, if the backend supports it."""
        with self._lock:
            self._require_ready()
            if not hasattr(self._storage, "search_fulltext"):
                return []
            return self._storage.search_fulltext(query, limit=limit)

    def get_related_keywords(self, keyword: str, limit: int = 10) -> list[dict]:
        with self._lock:
            self._require_ready()
            return self._graph.get_related_keywords(keyword, limit=limit)

    def get_top_keywords(self, limit: int = 20) -> list[dict]:
        with self._lock:
            self._require_ready()
            return self._graph.get_top_keywords(limit=limit)

    def get_graph_stats(self) -> GraphStats:
        with self._lock:
            self._require_ready()
            return self._graph.get_stats()

    def rebuild_graph(self) -> GraphStats:
        """
        Rebuild the graph from all stored entries and save the snapshot.

        Recomputes every node weight and drops edges left behind by
        deleted or edited entries.
        """
        with self._lock:
            self._require_ready()
            self._graph.build_from_entries(self._storage.list(limit=None))
            self._storage.update_keyword_graph(self._graph.export())
            stats = self._graph.get_stats()
        logger.info("Rebuilt keyword graph: %d nodes, %d edges", stats.nodes, stats.edges)
        return stats

    # -------------------------------------------------------------------------
    # Sync
    # -------------------------------------------------------------------------

    def sync_push(self) -> SyncResult:
        """Save the graph snapshot and upload the whole store."""
        with self._lock:
            self._require_ready()
            if self._sync is None:
                return SyncResult(False, "Sync not configured")
            try:
                self._storage.update_keyword_graph(self._graph.export())
                data = self._storage.export_bytes()
                self._sync.push(data)
            except (KwmemError, OSError) as e:
                logger.warning("Sync push failed: %s", e)
                return SyncResult(False, str(e))
        return SyncResult(True)

    def sync_pull(self) -> SyncResult:
        """
        Replace the local store with the remote copy and re-initialize.

        Without a remote copy nothing changes locally.
        """
        with self._lock:
            self._require_ready()
            if self._sync is None:
                return SyncResult(False, "Sync not configured")
            try:
                data = self._sync.pull()
            except SyncError as e:
                logger.warning("Sync pull failed: %s", e)
                return SyncResult(False, str(e))
            if not data:
                return SyncResult(False, "No remote data found")
            if not data.startswith(_SQLITE_HEADER):
                return SyncResult(False, "Remote data is not a kwmem store")

            self._storage.close()
            self._state = ServiceState.UNINITIALIZED
            try:
                self._replace_db_file(Path(self._storage.db_path), data)
            except OSError as e:
                logger.warning("Failed to write pulled store: %s", e)
                error = f"Cannot write local store: {e}"
            else:
                error = None

            try:
                self._open_store()
            except StorageUnavailableError as e:
                return SyncResult(False, str(e))
        logger.info("Pulled %d bytes into %s", len(data), self._storage.db_path)
        return SyncResult(error is None, error)

    @staticmethod
    def _replace_db_file(db_path: Path, data: bytes) -> None:
        # Stale WAL/SHM files would be replayed over the new database
        for suffix in ("-wal", "-shm"):
            Path(f"{db_path}{suffix}").unlink(missing_ok=True)
        tmp = db_path.with_name(db_path.name + ".pull")
        tmp.write_bytes(data)
        os.replace(tmp, db_path)

    def get_last_sync_time(self) -> Optional[int]:
        """Epoch ms of the last push recorded on the remote, or None."""
        self._require_ready()
        if self._sync is None:
            return None
        return self._sync.get_last_sync_time()
