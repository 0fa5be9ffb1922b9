"""Tests for core configuration classes."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from possync.core.config import (
    ServerConfig,
    SyncConfig,
    get_config_dir,
    load_config,
    save_config,
)


class TestServerConfig:
    """Tests for ServerConfig class."""

    def test_init_basic(self) -> None:
        """Should initialize with defaults."""
        config = ServerConfig(server_url="https://pos.example.com/api", token="test-token")
        assert config.server_url == "https://pos.example.com/api"
        assert config.token == "test-token"
        assert config.timeout == 10.0
        assert config.verify_ssl is True

    def test_url_trailing_slash_removed(self) -> None:
        """Should strip trailing slash from server URL."""
        config = ServerConfig(server_url="https://example.com/api/")
        assert config.server_url == "https://example.com/api"

    def test_is_secure_https(self) -> None:
        """Should return True for HTTPS URLs."""
        assert ServerConfig(server_url="https://example.com").is_secure is True

    def test_is_secure_http(self) -> None:
        """Should return False for HTTP URLs."""
        assert ServerConfig(server_url="http://127.0.0.1:5000").is_secure is False


class TestSyncConfig:
    """Tests for SyncConfig class."""

    def test_defaults(self) -> None:
        """Should default to the documented tuning."""
        config = SyncConfig()
        assert config.data_dir == get_config_dir()
        assert config.probe_interval == 5.0
        assert config.offline_threshold == 3
        assert config.sync_interval == 30.0
        assert config.max_attempts == 8
        assert config.max_delay == 300.0

    def test_paths(self, tmp_path: Path) -> None:
        """Database paths live in the data directory."""
        config = SyncConfig(data_dir=tmp_path)
        assert config.queue_path == tmp_path / "queue.db"
        assert config.state_path == tmp_path / "state.db"

    def test_data_dir_from_string(self, tmp_path: Path) -> None:
        """data_dir accepts strings."""
        config = SyncConfig(data_dir=str(tmp_path))  # type: ignore[arg-type]
        assert config.data_dir == tmp_path

    @pytest.mark.parametrize("name", ["offline_threshold", "batch_size", "max_attempts"])
    def test_rejects_values_below_one(self, name: str) -> None:
        """Counts must be at least 1."""
        with pytest.raises(ValueError, match=name):
            SyncConfig(**{name: 0})


class TestLoadConfig:
    """Tests for load_config() and save_config()."""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Remove environment overrides."""
        for name in ("POSSYNC_SERVER_URL", "POSSYNC_TOKEN", "POSSYNC_DATA_DIR"):
            monkeypatch.delenv(name, raising=False)

    def test_load_from_file(self, tmp_path: Path) -> None:
        """Should read both configs from one JSON object."""
        config_file = tmp_path / "config.json"
        config_file.write_text(
            json.dumps(
                {
                    "server_url": "http://127.0.0.1:5000/api/",
                    "token": "abc",
                    "batch_size": 20,
                    "data_dir": str(tmp_path / "data"),
                    "unknown_key": True,
                }
            )
        )

        server, sync = load_config(config_file)

        assert server.server_url == "http://127.0.0.1:5000/api"
        assert server.token == "abc"
        assert sync.batch_size == 20
        assert sync.data_dir == tmp_path / "data"

    def test_missing_server_url(self, tmp_path: Path) -> None:
        """Should fail when no server URL is configured."""
        with pytest.raises(ValueError, match="server_url"):
            load_config(tmp_path / "missing.json")

    def test_environment_overrides(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Environment variables override the file."""
        config_file = tmp_path / "config.json"
        config_file.write_text(json.dumps({"server_url": "http://old", "token": "old"}))
        monkeypatch.setenv("POSSYNC_SERVER_URL", "https://new.example.com")
        monkeypatch.setenv("POSSYNC_TOKEN", "new-token")
        monkeypatch.setenv("POSSYNC_DATA_DIR", str(tmp_path / "env-data"))

        server, sync = load_config(config_file)

        assert server.server_url == "https://new.example.com"
        assert server.token == "new-token"
        assert sync.data_dir == tmp_path / "env-data"

    def test_environment_only(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """A config file is optional when the environment has a URL."""
        monkeypatch.setenv("POSSYNC_SERVER_URL", "http://pos.local")

        server, _ = load_config(tmp_path / "missing.json")

        assert server.server_url == "http://pos.local"

    def test_save_and_reload(self, tmp_path: Path) -> None:
        """Saved configuration loads back identically."""
        config_file = tmp_path / "nested" / "config.json"
        server = ServerConfig("https://pos.example.com", token="t", timeout=5.0)
        sync = SyncConfig(data_dir=tmp_path / "data", batch_size=10, pull_enabled=False)

        save_config(server, sync, config_file)
        loaded_server, loaded_sync = load_config(config_file)

        assert loaded_server == server
        assert loaded_sync == sync
