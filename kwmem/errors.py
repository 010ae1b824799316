"""
Error types and error logging for kwmem.

Business-level absence (a missing entry id) is never an exception: read
returns None, delete returns False. The exceptions here cover malformed
input and infrastructure failures. Failures are logged with full stack
traces for debugging while callers show clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class KwmemError(Exception):
    """Base class for kwmem errors."""


class ValidationError(KwmemError, ValueError):
    """Malformed input parameters. Not retried."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


class StorageUnavailableError(KwmemError):
    """The store is not initialized or failed with an unrecoverable I/O error."""


class ServiceNotReadyError(StorageUnavailableError):
    """An operation was called on a service that is not in the Ready state."""


class ImportFileError(KwmemError):
    """A single file could not be imported (oversized, unreadable, unsupported)."""

    def __init__(self, path, message: str):
        self.path = str(path)
        self.message = message
        super().__init__(f"{self.path}: {message}")


class SyncError(KwmemError):
    """Error communicating with the sync remote."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting KWMEM_STORE_PATH."""
    store = os.environ.get("KWMEM_STORE_PATH")
    if store:
        return Path(store) / "kwmem-errors.log"
    return Path.home() / ".kwmem" / "kwmem-errors.log"


def log_exception(exc: Exception, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
