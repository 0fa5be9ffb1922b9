"""Core module - Shared configuration and types."""

from possync.core.config import (
    ServerConfig,
    SyncConfig,
    get_config_dir,
    get_config_file,
    load_config,
    save_config,
)
from possync.core.types import SyncState

__all__ = [
    # Config
    "ServerConfig",
    "SyncConfig",
    "get_config_dir",
    "get_config_file",
    "load_config",
    "save_config",
    # Types
    "SyncState",
]
