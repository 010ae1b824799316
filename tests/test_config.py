"""Tests for kwmem.config: TOML store configuration."""

import tomllib

import pytest

from kwmem.config import (
    CONFIG_FILENAME,
    StoreConfig,
    SyncConfig,
    get_default_store_path,
    load_config,
    load_or_create_config,
    save_config,
)


def test_default_store_path_from_env(tmp_path, monkeypatch):
    monkeypatch.setenv("KWMEM_STORE_PATH", str(tmp_path / "elsewhere"))
    assert get_default_store_path() == tmp_path / "elsewhere"


def test_default_store_path_home(monkeypatch):
    monkeypatch.delenv("KWMEM_STORE_PATH")
    assert get_default_store_path().name == ".kwmem"


class TestLoadOrCreate:
    def test_creates_file_with_defaults(self, tmp_path):
        config = load_or_create_config(tmp_path / "store")

        assert (tmp_path / "store" / CONFIG_FILENAME).exists()
        assert config.db_path == tmp_path / "store" / "memory.db"
        assert config.search.max_results == 20
        assert config.search.min_score == 0.1
        assert config.importer.category == "imported"
        assert config.sync is None

    def test_uses_env_store_path(self, tmp_path):
        config = load_or_create_config()
        assert config.path == tmp_path / "default-store"

    def test_loads_existing(self, tmp_path):
        first = load_or_create_config(tmp_path)
        first.search.max_results = 5
        save_config(first)

        assert load_or_create_config(tmp_path).search.max_results == 5


class TestRoundTrip:
    def test_sync_saved_without_password(self, tmp_path):
        config = StoreConfig(path=tmp_path)
        config.sync = SyncConfig(
            url="https://dav.example.com", username="me", password="hunter2",
            remote_path="/notes/kw.db",
        )

        save_config(config)

        with open(config.config_path, "rb") as f:
            raw = tomllib.load(f)
        assert "password" not in raw["sync"]
        loaded = load_config(tmp_path)
        assert loaded.sync.url == "https://dav.example.com"
        assert loaded.sync.username == "me"
        assert loaded.sync.password == ""
        assert loaded.sync.remote_path == "/notes/kw.db"

    def test_extensions_normalized(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[import]\nextensions = ["md", ".rst"]\n')
        assert load_config(tmp_path).importer.extensions == [".md", ".rst"]

    def test_unknown_keys_ignored(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[search]\nmax_results = 3\nflavour = 'mint'\n")
        assert load_config(tmp_path).search.max_results == 3


class TestEnvOverrides:
    def test_url_enables_webdav(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KWMEM_WEBDAV_URL", "https://dav.example.com/me")
        monkeypatch.setenv("KWMEM_WEBDAV_USERNAME", "alice")
        monkeypatch.setenv("KWMEM_WEBDAV_PASSWORD", "s3cret")

        config = load_or_create_config(tmp_path)

        assert config.sync.backend == "webdav"
        assert config.sync.url == "https://dav.example.com/me"
        assert config.sync.username == "alice"
        assert config.sync.password == "s3cret"

    def test_password_supplements_file(self, tmp_path, monkeypatch):
        config = StoreConfig(path=tmp_path, sync=SyncConfig(url="https://dav.example.com", username="me"))
        save_config(config)
        monkeypatch.setenv("KWMEM_WEBDAV_PASSWORD", "from-env")

        loaded = load_config(tmp_path)

        assert loaded.sync.username == "me"
        assert loaded.sync.password == "from-env"

    def test_credentials_alone_do_not_enable_sync(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KWMEM_WEBDAV_PASSWORD", "orphan")
        assert load_or_create_config(tmp_path).sync is None


class TestInvalid:
    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_bad_toml(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[search\n")
        with pytest.raises(ValueError, match="Invalid config"):
            load_config(tmp_path)

    def test_newer_version(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ValueError, match="newer"):
            load_config(tmp_path)

    def test_unknown_backend(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text('[sync]\nbackend = "ftp"\nurl = "ftp://x"\n')
        with pytest.raises(ValueError, match="Unknown sync backend"):
            load_config(tmp_path)
