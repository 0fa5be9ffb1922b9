"""Shared types and dataclasses for sync operations.

This module provides:
- SyncError, CorruptRecordError: Exception classes
- MutationOperation, MutationStatus, MutationRecord: Queue types
- SyncSession: Per-pass bookkeeping
- ConnectivityState: Reachability snapshot published by the monitor
- Type aliases for callbacks
"""

from __future__ import annotations

import json
import sqlite3
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class SyncError(Exception):
    """Base exception for sync errors."""


class CorruptRecordError(SyncError):
    """A queued record could not be decoded from local storage."""

    def __init__(self, record_id: int, reason: str) -> None:
        self.record_id = record_id
        super().__init__(f"Record {record_id} is corrupt: {reason}")


class MutationOperation(str, Enum):
    """Kind of local write."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class MutationStatus(str, Enum):
    """Lifecycle of a queued record.

    PENDING -> IN_FLIGHT -> SYNCED (pruned) | PENDING (retry) | FAILED
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SYNCED = "synced"
    FAILED = "failed"


@dataclass
class MutationRecord:
    """One queued local write.

    Attributes:
        id: Monotonic queue id (ordering key).
        entity_type: Kind of entity ("sale", "product", ...).
        entity_id: Local entity id, possibly provisional.
        operation: create, update or delete.
        raw_payload: JSON text as stored; use `payload` to decode.
        status: Current lifecycle status.
        attempt_count: Push attempts that failed so far.
        next_attempt_at: Earliest time (epoch seconds) of the next push.
        last_error: Error message of the last failed attempt.
        created_at: Enqueue time (epoch seconds).
        remote_id: Canonical server id once known.
    """

    id: int
    entity_type: str
    entity_id: str
    operation: MutationOperation
    raw_payload: str
    status: MutationStatus
    attempt_count: int = 0
    next_attempt_at: float = 0.0
    last_error: str | None = None
    created_at: float = 0.0
    remote_id: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> MutationRecord:
        """Create MutationRecord from database row."""
        return cls(
            id=row["id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            operation=MutationOperation(row["operation"]),
            raw_payload=row["payload"],
            status=MutationStatus(row["status"]),
            attempt_count=row["attempt_count"],
            next_attempt_at=row["next_attempt_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            remote_id=row["remote_id"],
        )

    @property
    def payload(self) -> dict[str, Any]:
        """Decode the stored payload.

        Raises:
            CorruptRecordError: If the stored text is not a JSON object.
        """
        try:
            value = json.loads(self.raw_payload)
        except (TypeError, ValueError) as e:
            raise CorruptRecordError(self.id, str(e)) from e
        if not isinstance(value, dict):
            raise CorruptRecordError(self.id, "payload is not an object")
        return value

    @property
    def is_dead(self) -> bool:
        """Check if the record was dead-lettered."""
        return self.status == MutationStatus.FAILED

    def __repr__(self) -> str:
        return (
            f"MutationRecord(#{self.id} {self.operation.value} "
            f"{self.entity_type}:{self.entity_id} {self.status.value})"
        )


@dataclass
class SyncSession:
    """Bookkeeping for one orchestrator pass. Never persisted."""

    started_at: float = field(default_factory=time.time)
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    pulled: int = 0
    conflicts: int = 0
    terminal_reason: str | None = None
    finished_at: float | None = None

    @property
    def duration(self) -> float:
        """Seconds the pass ran (so far, if unfinished)."""
        end = self.finished_at if self.finished_at is not None else time.time()
        return end - self.started_at


@dataclass(frozen=True)
class ConnectivityState:
    """Reachability of the backend as last probed.

    Attributes:
        is_online: Whether the backend is considered reachable.
        last_probe_at: Time of the last probe (None before the first one).
        consecutive_failures: Failed probes since the last success.
    """

    is_online: bool = False
    last_probe_at: float | None = None
    consecutive_failures: int = 0

    @property
    def has_probed(self) -> bool:
        """Check if at least one probe completed."""
        return self.last_probe_at is not None


# Type aliases for callbacks
ConnectivityListener = Callable[[ConnectivityState], None]
QueueListener = Callable[[], None]
SessionCallback = Callable[[SyncSession], None]
