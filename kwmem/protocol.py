"""
Protocol definitions for kwmem storage and sync backends.

Defines interface contracts for:
- StorageBackendProtocol: durable entry CRUD plus the keyword-graph snapshot
  (SQLite locally; anything with the same capabilities can stand in)
- SyncBackendProtocol: whole-file push/pull of the store to a remote
"""

from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from .types import EntryDraft, KeywordNode, MemoryEntry


@runtime_checkable
class StorageBackendProtocol(Protocol):
    """
    Durable storage for memory entries and the graph snapshot.

    Implemented by:
    - EntryStore (local SQLite)

    Missing ids are a normal outcome (None / False), never an exception.
    Use before init() or an unrecoverable I/O failure raises
    StorageUnavailableError.
    """

    @property
    def db_path(self) -> Path: ...

    def init(self) -> None: ...

    def close(self) -> None: ...

    # -- CRUD --

    def create(self, draft: EntryDraft) -> MemoryEntry: ...

    def read(self, id: str) -> Optional[MemoryEntry]: ...

    def update(self, id: str, **fields: Any) -> Optional[MemoryEntry]: ...

    def delete(self, id: str) -> bool: ...

    # -- Bulk --

    def bulk_create(self, drafts: list[EntryDraft]) -> list[MemoryEntry]: ...

    def list(
        self,
        category: Optional[str] = None,
        limit: Optional[int] = 100,
        offset: int = 0,
    ) -> list[MemoryEntry]: ...

    def count(self) -> int: ...

    # -- Keyword graph snapshot --

    def get_keyword_graph(self) -> dict[str, KeywordNode]: ...

    def update_keyword_graph(self, nodes: dict[str, KeywordNode]) -> None: ...

    # -- Raw bytes for whole-file sync --

    def export_bytes(self) -> bytes: ...


@runtime_checkable
class SyncBackendProtocol(Protocol):
    """
    Whole-file replication target.

    Implemented by:
    - WebDAVSync (remote WebDAV server)
    - DirectorySync (a mounted or shared directory)

    No merge and no conflict detection: the last push wins.
    """

    def init(self) -> None: ...

    def push(self, data: bytes) -> None: ...

    def pull(self) -> Optional[bytes]: ...

    def get_last_sync_time(self) -> Optional[int]: ...

    def close(self) -> None: ...
