"""Sync status projection for UI collaborators.

This module provides:
- StatusSnapshot: Immutable view of the engine's status
- StatusPublisher: Lock-free read API plus the manual sync trigger

Architecture:
    ConnectivityMonitor ─┐
    MutationQueue ───────┼─► StatusPublisher ─► UI (polls / listens)
    SyncOrchestrator ────┘

Writers replace the whole snapshot under a writer lock; readers only
load the current snapshot reference, so UI polling never blocks behind
a sync pass.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from possync.core.types import SyncState

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusSnapshot:
    """Status published to UI collaborators.

    Attributes:
        state: Current sync state.
        is_online: Whether the backend is reachable.
        pending_count: Records waiting to be synced (dead letters excluded).
        error_count: Dead-lettered records awaiting an operator.
        last_sync_at: End time of the last completed pass (epoch seconds).
        last_sync_error: Message explaining the last error state.
        records_synced: Records pushed by the last completed pass.
    """

    state: SyncState = SyncState.IDLE
    is_online: bool = False
    pending_count: int = 0
    error_count: int = 0
    last_sync_at: float | None = None
    last_sync_error: str | None = None
    records_synced: int = 0

    def to_message(self) -> dict[str, Any]:
        """Convert to the JSON body served to UI processes."""
        last_sync_at = None
        if self.last_sync_at is not None:
            last_sync_at = datetime.fromtimestamp(self.last_sync_at, tz=timezone.utc).isoformat()
        return {
            "status": self.state.value,
            "isOnline": self.is_online,
            "pendingCount": self.pending_count,
            "errorCount": self.error_count,
            "lastSyncAt": last_sync_at,
            "lastSyncError": self.last_sync_error,
            "recordsSynced": self.records_synced,
        }


class StatusPublisher:
    """Read-only status projection with a fire-and-forget sync trigger.

    Usage:
        publisher = StatusPublisher()
        publisher.bind_trigger(orchestrator.request_sync)

        if publisher.sync_status() == SyncState.ERROR:
            ...
        publisher.trigger_sync()
    """

    def __init__(self, trigger: Callable[[], None] | None = None) -> None:
        """Initialize the publisher.

        Args:
            trigger: Non-blocking callable that requests a sync pass.
        """
        self._snapshot = StatusSnapshot()
        self._write_lock = threading.Lock()
        self._trigger = trigger
        self._listeners: list[Callable[[StatusSnapshot], None]] = []

    def bind_trigger(self, trigger: Callable[[], None]) -> None:
        """Set the callable used by trigger_sync()."""
        self._trigger = trigger

    def add_listener(self, callback: Callable[[StatusSnapshot], None]) -> None:
        """Register a callback invoked when the snapshot changes."""
        self._listeners.append(callback)

    # === Reader API ===

    def snapshot(self) -> StatusSnapshot:
        """Get the current status snapshot."""
        return self._snapshot

    def is_online(self) -> bool:
        """Check if the backend is reachable."""
        return self._snapshot.is_online

    def sync_status(self) -> SyncState:
        """Get the current sync state."""
        return self._snapshot.state

    def pending_count(self) -> int:
        """Number of records waiting to be synced."""
        return self._snapshot.pending_count

    def trigger_sync(self) -> None:
        """Request a sync pass without waiting for it.

        Calling this while a pass is running has no effect. Completion is
        observed later through sync_status().
        """
        if self._trigger is None:
            logger.debug("trigger_sync() called before an orchestrator was bound")
            return
        try:
            self._trigger()
        except Exception:
            logger.exception("Sync trigger failed")

    # === Writer API ===

    def update(self, **changes: Any) -> StatusSnapshot:
        """Publish a new snapshot with some fields changed.

        Args:
            **changes: StatusSnapshot fields to replace.

        Returns:
            The snapshot now being published.
        """
        with self._write_lock:
            previous = self._snapshot
            current = replace(previous, **changes)
            if current == previous:
                return previous
            self._snapshot = current

        if current.state != previous.state:
            logger.info("Sync status: %s -> %s", previous.state.value, current.state.value)
        for callback in list(self._listeners):
            try:
                callback(current)
            except Exception:
                logger.exception("Status listener failed")
        return current
