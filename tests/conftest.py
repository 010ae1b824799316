"""
Shared pytest fixtures for kwmem tests.

Every test gets its own store directory; nothing touches ~/.kwmem.
"""

from pathlib import Path
from typing import Optional

import pytest

from kwmem.entry_store import EntryStore
from kwmem.service import MemoryService
from kwmem.types import MemoryEntry, now_ms


class FakeSync:
    """In-memory sync backend."""

    def __init__(self, data: Optional[bytes] = None):
        self.data = data
        self.last_sync: Optional[int] = None
        self.push_calls = 0
        self.init_calls = 0
        self.closed = False
        self.fail_with: Optional[Exception] = None

    def init(self) -> None:
        self.init_calls += 1
        self.closed = False

    def push(self, data: bytes) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.push_calls += 1
        self.data = bytes(data)
        self.last_sync = now_ms()

    def pull(self) -> Optional[bytes]:
        if self.fail_with is not None:
            raise self.fail_with
        return self.data

    def get_last_sync_time(self) -> Optional[int]:
        return self.last_sync

    def close(self) -> None:
        self.closed = True


def make_entry(id: str, keywords: list[str], content: str = "") -> MemoryEntry:
    """Build a MemoryEntry directly, for graph tests that don't need storage."""
    return MemoryEntry(id=id, content=content or f"entry {id}", keywords=keywords)


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    """Keep error logs and config discovery inside the test's tmp dir."""
    for name in ("KWMEM_WEBDAV_URL", "KWMEM_WEBDAV_USERNAME", "KWMEM_WEBDAV_PASSWORD", "KWMEM_VERBOSE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("KWMEM_STORE_PATH", str(tmp_path / "default-store"))


@pytest.fixture
def store_dir(tmp_path) -> Path:
    return tmp_path / "store"


@pytest.fixture
def entry_store(tmp_path):
    """An initialized EntryStore on a fresh database."""
    store = EntryStore(tmp_path / "entries.db")
    store.init()
    yield store
    store.close()


@pytest.fixture
def fake_sync():
    return FakeSync()


@pytest.fixture
def service(store_dir):
    """A ready MemoryService without sync."""
    svc = MemoryService(store_dir)
    svc.init()
    yield svc
    svc.close()


@pytest.fixture
def synced_service(store_dir, fake_sync):
    """A ready MemoryService with an in-memory sync backend."""
    svc = MemoryService(store_dir, sync=fake_sync)
    svc.init()
    yield svc
    svc.close()
