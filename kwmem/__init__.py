"""
Keyword Memory

A persistent store of short notes tagged with keywords, searched through a
keyword co-occurrence graph so that a query can find entries it shares no
keyword with.

Quick Start:
    from kwmem import MemoryService

    with MemoryService() as svc:  # uses ~/.kwmem/
        svc.create("Use WAL mode for concurrent readers", ["sqlite", "wal"])
        results = svc.search("sqlite locking")

CLI Usage:
    kwmem add "text" -k keyword -k other
    kwmem search "query text"
    kwmem import ~/notes
    kwmem sync push

Default Store:
    ~/.kwmem/ (created automatically).
    Override with KWMEM_STORE_PATH or an explicit path argument.

Environment Variables:
    KWMEM_STORE_PATH       - Override default store location
    KWMEM_VERBOSE          - Set to 1 for debug logging
    KWMEM_WEBDAV_URL       - WebDAV server for sync
    KWMEM_WEBDAV_USERNAME  - WebDAV user
    KWMEM_WEBDAV_PASSWORD  - WebDAV password

Configuration is persisted in kwmem.toml within the store directory.
"""

from .errors import (
    ImportFileError,
    KwmemError,
    ServiceNotReadyError,
    StorageUnavailableError,
    SyncError,
    ValidationError,
)
from .graph import KeywordGraph
from .service import ImportResult, MemoryService, ServiceState, SyncResult
from .types import EntryDraft, GraphStats, KeywordNode, MemoryEntry, SearchResult

__version__ = "0.1.0"
__all__ = [
    "MemoryService",
    "ServiceState",
    "SyncResult",
    "ImportResult",
    "KeywordGraph",
    "EntryDraft",
    "MemoryEntry",
    "KeywordNode",
    "SearchResult",
    "GraphStats",
    "KwmemError",
    "ValidationError",
    "StorageUnavailableError",
    "ServiceNotReadyError",
    "ImportFileError",
    "SyncError",
]
