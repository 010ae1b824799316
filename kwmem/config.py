"""
Configuration management for kwmem stores.

The configuration is stored as a TOML file in the store directory.
It specifies search tuning, importer defaults and the optional sync target.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import tomli_w


CONFIG_FILENAME = "kwmem.toml"
CONFIG_VERSION = 1
DEFAULT_DB_FILENAME = "memory.db"
DEFAULT_REMOTE_PATH = "/memory-sync/data.db"

DEFAULT_EXTENSIONS = (".md", ".txt", ".json", ".yaml", ".yml")
DEFAULT_MAX_FILE_SIZE = 1024 * 1024  # 1 MiB


def get_default_store_path() -> Path:
    """Store directory: KWMEM_STORE_PATH if set, else ~/.kwmem."""
    env = os.environ.get("KWMEM_STORE_PATH")
    if env:
        return Path(env).expanduser()
    return Path.home() / ".kwmem"


@dataclass
class SearchConfig:
    """Tuning for graph search."""
    max_results: int = 20
    min_score: float = 0.1
    use_graph_expansion: bool = True
    # Upper bound on entries scored per query
    candidate_limit: int = 1000
    max_depth: int = 2
    max_expansion: int = 10


@dataclass
class ImportConfig:
    """Defaults for directory import."""
    extensions: list[str] = field(default_factory=lambda: list(DEFAULT_EXTENSIONS))
    max_file_size: int = DEFAULT_MAX_FILE_SIZE
    category: str = "imported"
    recursive: bool = True


@dataclass
class SyncConfig:
    """Whole-file sync target.

    backend is "webdav" (url/username/password) or "directory" (url is a
    local directory path).
    """
    backend: str = "webdav"
    url: str = ""
    username: str = ""
    password: str = ""
    remote_path: str = DEFAULT_REMOTE_PATH


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    db_filename: str = DEFAULT_DB_FILENAME

    search: SearchConfig = field(default_factory=SearchConfig)
    importer: ImportConfig = field(default_factory=ImportConfig)
    sync: Optional[SyncConfig] = None

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        """Path to the SQLite database."""
        return self.path / self.db_filename

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _apply_env_overrides(config: StoreConfig) -> StoreConfig:
    """Let credentials come from the environment rather than the TOML file."""
    url = os.environ.get("KWMEM_WEBDAV_URL")
    if url:
        if config.sync is None:
            config.sync = SyncConfig()
        config.sync.backend = "webdav"
        config.sync.url = url
    if config.sync is not None:
        username = os.environ.get("KWMEM_WEBDAV_USERNAME")
        password = os.environ.get("KWMEM_WEBDAV_PASSWORD")
        if username:
            config.sync.username = username
        if password:
            config.sync.password = password
    return config


def _pick(section: dict, cls, **extra) -> Any:
    """Build a config dataclass from the keys of *section* it knows about."""
    known = {k: v for k, v in section.items() if k in cls.__dataclass_fields__}
    return cls(**known, **extra)


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        try:
            data = tomllib.load(f)
        except tomllib.TOMLDecodeError as e:
            raise ValueError(f"Invalid config {config_path}: {e}") from e

    store = data.get("store", {})
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    sync_section = data.get("sync")
    sync = _pick(sync_section, SyncConfig) if sync_section else None
    if sync is not None and sync.backend not in ("webdav", "directory"):
        raise ValueError(f"Unknown sync backend: {sync.backend!r}")

    importer = _pick(data.get("import", {}), ImportConfig)
    importer.extensions = [e if e.startswith(".") else f".{e}" for e in importer.extensions]

    config = StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        db_filename=store.get("db_filename", DEFAULT_DB_FILENAME),
        search=_pick(data.get("search", {}), SearchConfig),
        importer=importer,
        sync=sync,
    )
    return _apply_env_overrides(config)


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist. The sync password is never
    written; supply it with KWMEM_WEBDAV_PASSWORD.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data: dict[str, Any] = {
        "store": {
            "version": config.version,
            "created": config.created,
            "db_filename": config.db_filename,
        },
        "search": {
            "max_results": config.search.max_results,
            "min_score": config.search.min_score,
            "use_graph_expansion": config.search.use_graph_expansion,
            "candidate_limit": config.search.candidate_limit,
            "max_depth": config.search.max_depth,
            "max_expansion": config.search.max_expansion,
        },
        "import": {
            "extensions": list(config.importer.extensions),
            "max_file_size": config.importer.max_file_size,
            "category": config.importer.category,
            "recursive": config.importer.recursive,
        },
    }
    if config.sync is not None:
        data["sync"] = {
            "backend": config.sync.backend,
            "url": config.sync.url,
            "username": config.sync.username,
            "remote_path": config.sync.remote_path,
        }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Optional[Path] = None) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    store_path = Path(store_path) if store_path is not None else get_default_store_path()
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return _apply_env_overrides(config)
