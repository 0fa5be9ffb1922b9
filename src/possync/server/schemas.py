"""Pydantic schemas for API request/response models."""

from __future__ import annotations

from pydantic import BaseModel

from possync.client.status import StatusSnapshot
from possync.client.sync.types import MutationRecord

# === Status schemas ===


class SyncStatusResponse(BaseModel):
    """Sync status as polled by the UI."""

    status: str
    isOnline: bool
    pendingCount: int
    errorCount: int
    lastSyncAt: str | None
    lastSyncError: str | None
    recordsSynced: int


class TriggerResponse(BaseModel):
    """Response for a manual sync trigger."""

    accepted: bool
    status: str


# === Dead-letter schemas ===


class DeadLetterResponse(BaseModel):
    """A dead-lettered mutation awaiting an operator decision."""

    id: int
    entity_type: str
    entity_id: str
    operation: str
    attempt_count: int
    last_error: str | None
    created_at: float
    remote_id: str | None


# === Health schema ===


class HealthResponse(BaseModel):
    """Health check response."""

    status: str


# === Converters ===


def snapshot_to_response(snapshot: StatusSnapshot) -> SyncStatusResponse:
    """Convert a StatusSnapshot to its HTTP response."""
    return SyncStatusResponse(**snapshot.to_message())


def record_to_response(record: MutationRecord) -> DeadLetterResponse:
    """Convert a dead-lettered MutationRecord to its HTTP response."""
    return DeadLetterResponse(
        id=record.id,
        entity_type=record.entity_type,
        entity_id=record.entity_id,
        operation=record.operation.value,
        attempt_count=record.attempt_count,
        last_error=record.last_error,
        created_at=record.created_at,
        remote_id=record.remote_id,
    )
