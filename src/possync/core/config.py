"""Shared configuration classes for possync.

This module defines the configuration used to build a sync engine:
- ServerConfig: how to reach the backend
- SyncConfig: local storage location and engine tuning
- load_config: read both from a JSON file with environment overrides
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any


@dataclass
class ServerConfig:
    """Configuration for connecting to the backend REST API.

    Used by the HTTP client for both data requests and reachability
    probes so that every request shares the same connection settings.

    Attributes:
        server_url: Base URL of the backend API (e.g., "http://127.0.0.1:5000/api").
        token: Bearer token sent with every request (empty = anonymous).
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    server_url: str
    token: str = ""
    timeout: float = 10.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize server URL."""
        self.server_url = self.server_url.rstrip("/")

    @property
    def is_secure(self) -> bool:
        """Check if using HTTPS.

        Returns:
            True if the backend uses HTTPS.
        """
        return self.server_url.startswith("https://")


def get_config_dir() -> Path:
    """Get the configuration directory for possync.

    Returns:
        Path to ~/.possync or equivalent.
    """
    return Path.home() / ".possync"


def get_config_file() -> Path:
    """Get the path to the config file."""
    return get_config_dir() / "config.json"


@dataclass
class SyncConfig:
    """Tuning for the sync engine.

    Attributes:
        data_dir: Directory holding queue.db and state.db.
        probe_interval: Seconds between connectivity probes.
        offline_threshold: Consecutive failed probes before going offline.
        sync_interval: Seconds between timer-driven passes while online.
        batch_size: Maximum records pushed per request.
        pull_enabled: Whether a pass pulls server changes after draining.
        pull_page_size: Maximum changes requested per pull page.
        base_delay: First retry delay in seconds.
        max_delay: Upper bound for any retry delay in seconds.
        backoff_multiplier: Growth factor between consecutive retries.
        jitter: Fraction of the delay randomized in both directions.
        max_attempts: Attempts before a record is dead-lettered.
    """

    data_dir: Path = field(default_factory=get_config_dir)
    probe_interval: float = 5.0
    offline_threshold: int = 3
    sync_interval: float = 30.0
    batch_size: int = 50
    pull_enabled: bool = True
    pull_page_size: int = 500
    base_delay: float = 1.0
    max_delay: float = 300.0
    backoff_multiplier: float = 2.0
    jitter: float = 0.2
    max_attempts: int = 8

    def __post_init__(self) -> None:
        """Validate tuning values."""
        self.data_dir = Path(self.data_dir).expanduser()
        if self.offline_threshold < 1:
            raise ValueError("offline_threshold must be at least 1")
        if self.batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @property
    def queue_path(self) -> Path:
        """Path of the mutation queue database."""
        return self.data_dir / "queue.db"

    @property
    def state_path(self) -> Path:
        """Path of the local state database."""
        return self.data_dir / "state.db"


def _pick(data: dict[str, Any], cls: type) -> dict[str, Any]:
    """Keep only the keys that are fields of a dataclass."""
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


def load_config(path: Path | None = None) -> tuple[ServerConfig, SyncConfig]:
    """Load server and engine configuration.

    The file is a JSON object holding ServerConfig and SyncConfig keys
    side by side. Environment variables POSSYNC_SERVER_URL, POSSYNC_TOKEN
    and POSSYNC_DATA_DIR override the file so deployments can reconfigure
    without rewriting it.

    Args:
        path: Config file to read (default ~/.possync/config.json).

    Returns:
        Tuple of (ServerConfig, SyncConfig).

    Raises:
        ValueError: If no server URL is configured.
    """
    config_file = path or get_config_file()
    data: dict[str, Any] = {}
    if config_file.exists():
        data = dict(json.loads(config_file.read_text(encoding="utf-8")))

    if os.environ.get("POSSYNC_SERVER_URL"):
        data["server_url"] = os.environ["POSSYNC_SERVER_URL"]
    if os.environ.get("POSSYNC_TOKEN"):
        data["token"] = os.environ["POSSYNC_TOKEN"]
    if os.environ.get("POSSYNC_DATA_DIR"):
        data["data_dir"] = os.environ["POSSYNC_DATA_DIR"]

    if not data.get("server_url"):
        raise ValueError(f"No server_url configured (looked in {config_file})")

    return ServerConfig(**_pick(data, ServerConfig)), SyncConfig(**_pick(data, SyncConfig))


def save_config(
    server: ServerConfig,
    sync: SyncConfig,
    path: Path | None = None,
) -> None:
    """Save configuration to the config file."""
    config_file = path or get_config_file()
    config_file.parent.mkdir(parents=True, exist_ok=True)
    data: dict[str, Any] = {
        "server_url": server.server_url,
        "token": server.token,
        "timeout": server.timeout,
        "verify_ssl": server.verify_ssl,
    }
    for f in fields(SyncConfig):
        value = getattr(sync, f.name)
        data[f.name] = str(value) if isinstance(value, Path) else value
    config_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
