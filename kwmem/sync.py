"""
Whole-file sync backends.

The entire store is pushed or pulled as one binary blob. Next to the blob
sits a small JSON sidecar, ``{"lastSync": <epoch ms>}``, written after each
successful push. There is no merge and no conflict detection: the last
writer wins.

Backends:
- WebDAVSync: HTTP(S) WebDAV server, via httpx
- DirectorySync: a local, mounted or shared directory
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlparse

import httpx

from .config import DEFAULT_REMOTE_PATH, SyncConfig
from .errors import SyncError
from .types import now_ms

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0

_LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


def meta_path_for(remote_path: str) -> str:
    """Sidecar path: the blob path with its extension replaced by .meta.json."""
    path = PurePosixPath(remote_path)
    if path.suffix:
        return str(path.with_suffix(".meta.json"))
    return f"{remote_path}.meta.json"


def _parse_last_sync(raw: bytes | str) -> Optional[int]:
    try:
        meta = json.loads(raw)
        value = meta.get("lastSync")
    except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
        return None
    return int(value) if isinstance(value, (int, float)) and value else None


class WebDAVSync:
    """Push/pull the store to a WebDAV server."""

    def __init__(
        self,
        url: str,
        username: str = "",
        password: str = "",
        *,
        remote_path: str = DEFAULT_REMOTE_PATH,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        self._url = url.rstrip("/")
        self._username = username
        self._password = password
        self._timeout = timeout
        self.remote_path = "/" + remote_path.lstrip("/")
        self.meta_path = meta_path_for(self.remote_path)

        # Refuse non-HTTPS for remote servers (credentials would be sent in cleartext)
        parsed = urlparse(self._url)
        if parsed.scheme not in ("http", "https"):
            raise ValueError(f"WebDAV URL must be http(s): {self._url}")
        if parsed.scheme != "https" and (parsed.hostname or "") not in _LOCAL_HOSTS:
            raise ValueError(
                f"WebDAV URL must use HTTPS (got {self._url}). "
                "Use HTTPS to protect credentials, or use localhost for local development."
            )

        self._client: Optional[httpx.Client] = None

    def init(self) -> None:
        """Create the HTTP client and make sure the remote directory exists."""
        if self._client is None:
            auth = (self._username, self._password) if self._username else None
            self._client = httpx.Client(
                base_url=self._url,
                auth=auth,
                timeout=self._timeout,
            )
        self._ensure_collections()

    def _ensure_client(self) -> httpx.Client:
        if self._client is None:
            raise SyncError("WebDAV client not initialized")
        return self._client

    def _ensure_collections(self) -> None:
        """MKCOL each parent directory of the blob; existing ones are fine."""
        client = self._ensure_client()
        parents = PurePosixPath(self.remote_path).parents
        for parent in reversed(list(parents)[:-1]):
            try:
                resp = client.request("MKCOL", f"{parent}/")
            except httpx.TransportError as e:
                logger.warning("WebDAV MKCOL %s failed: %s", parent, e)
                return
            # 201 created; 405 already exists
            if resp.status_code not in (200, 201, 405):
                logger.warning("WebDAV MKCOL %s returned %d", parent, resp.status_code)

    def push(self, data: bytes) -> None:
        """Upload the blob, then record the sync time in the sidecar."""
        client = self._ensure_client()
        meta = json.dumps({"lastSync": now_ms()})
        try:
            resp = client.put(self.remote_path, content=data)
            resp.raise_for_status()
            resp = client.put(
                self.meta_path,
                content=meta.encode("utf-8"),
                headers={"Content-Type": "application/json"},
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SyncError(
                f"WebDAV upload rejected: {e.response.status_code}"
            ) from e
        except httpx.TransportError as e:
            raise SyncError(f"WebDAV upload failed: {e}") from e
        logger.info("Pushed %d bytes to %s%s", len(data), self._url, self.remote_path)

    def pull(self) -> Optional[bytes]:
        """Download the blob, or None if there is no remote copy."""
        client = self._ensure_client()
        try:
            resp = client.get(self.remote_path)
            if resp.status_code == 404:
                return None
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SyncError(
                f"WebDAV download failed: {e.response.status_code}"
            ) from e
        except httpx.TransportError as e:
            raise SyncError(f"WebDAV download failed: {e}") from e
        logger.info("Pulled %d bytes from %s%s", len(resp.content), self._url, self.remote_path)
        return resp.content

    def get_last_sync_time(self) -> Optional[int]:
        """Epoch ms of the last push, or None if unknown."""
        client = self._ensure_client()
        try:
            resp = client.get(self.meta_path)
        except httpx.TransportError as e:
            logger.warning("Failed to read sync metadata: %s", e)
            return None
        if resp.status_code != 200:
            return None
        return _parse_last_sync(resp.content)

    def close(self) -> None:
        """Close the HTTP client."""
        if self._client is not None:
            self._client.close()
            self._client = None


class DirectorySync:
    """Push/pull the store to a directory (e.g. a mounted network share)."""

    def __init__(self, root, *, remote_path: str = DEFAULT_REMOTE_PATH):
        self.root = Path(root).expanduser()
        self.blob_path = self.root / remote_path.lstrip("/")
        self.meta_path = self.root / meta_path_for(remote_path).lstrip("/")

    def init(self) -> None:
        try:
            self.blob_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SyncError(f"Cannot create sync directory {self.blob_path.parent}: {e}") from e

    @staticmethod
    def _write_atomic(path: Path, data: bytes) -> None:
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)

    def push(self, data: bytes) -> None:
        try:
            self._write_atomic(self.blob_path, data)
            meta = json.dumps({"lastSync": now_ms()}).encode("utf-8")
            self._write_atomic(self.meta_path, meta)
        except OSError as e:
            raise SyncError(f"Directory sync upload failed: {e}") from e
        logger.info("Pushed %d bytes to %s", len(data), self.blob_path)

    def pull(self) -> Optional[bytes]:
        try:
            return self.blob_path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SyncError(f"Directory sync download failed: {e}") from e

    def get_last_sync_time(self) -> Optional[int]:
        try:
            return _parse_last_sync(self.meta_path.read_bytes())
        except OSError:
            return None

    def close(self) -> None:
        pass


def create_sync_backend(config: Optional[SyncConfig]):
    """
    Create a sync backend from configuration.

    Returns None when sync is not configured.
    """
    if config is None or not config.url:
        return None
    if config.backend == "webdav":
        return WebDAVSync(
            config.url,
            config.username,
            config.password,
            remote_path=config.remote_path,
        )
    if config.backend == "directory":
        return DirectorySync(config.url, remote_path=config.remote_path)
    raise ValueError(f"Unknown sync backend: {config.backend!r}")
