"""Shared types for possync.

This module defines types and enums used by both the engine and the
status API.
"""

from __future__ import annotations

from enum import Enum


class SyncState(str, Enum):
    """Sync state of the engine.

    The string values are the public contract consumed by UI
    collaborators and must not change.
    """

    IDLE = "idle"
    SYNCING = "syncing"
    SYNCED = "synced"
    ERROR = "error"
    OFFLINE = "offline"
