"""Sync status API routes.

UI processes poll GET /sync/status (the desktop client did so every 10
seconds while syncing and every 30 seconds otherwise) and request a pass
with POST /sync/trigger, which returns before the pass runs.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from possync.client.engine import SyncEngine
from possync.server.api.deps import get_engine
from possync.server.schemas import (
    DeadLetterResponse,
    SyncStatusResponse,
    TriggerResponse,
    record_to_response,
    snapshot_to_response,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["sync"])


@router.get("/status", response_model=SyncStatusResponse)
def get_status(engine: SyncEngine = Depends(get_engine)) -> SyncStatusResponse:
    """Get the current sync status."""
    return snapshot_to_response(engine.status.snapshot())


@router.post(
    "/trigger",
    response_model=TriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
def trigger_sync(engine: SyncEngine = Depends(get_engine)) -> TriggerResponse:
    """Request a sync pass without waiting for it.

    A trigger while a pass is running is accepted and ignored.
    """
    engine.trigger_sync()
    return TriggerResponse(accepted=True, status=engine.status.sync_status().value)


@router.get("/dead-letters", response_model=list[DeadLetterResponse])
def list_dead_letters(engine: SyncEngine = Depends(get_engine)) -> list[DeadLetterResponse]:
    """List mutations the server rejected."""
    return [record_to_response(record) for record in engine.dead_letters()]


@router.post("/dead-letters/{record_id}/requeue", status_code=status.HTTP_204_NO_CONTENT)
def requeue_dead_letter(record_id: int, engine: SyncEngine = Depends(get_engine)) -> None:
    """Retry a dead-lettered mutation with a fresh attempt budget.

    Raises:
        HTTPException: If no dead-lettered mutation has this id.
    """
    if not engine.requeue(record_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Dead-lettered mutation not found",
        )
    logger.info("Operator requeued mutation #%d", record_id)


@router.delete("/dead-letters/{record_id}", status_code=status.HTTP_204_NO_CONTENT)
def discard_dead_letter(record_id: int, engine: SyncEngine = Depends(get_engine)) -> None:
    """Drop a dead-lettered mutation.

    Raises:
        HTTPException: If no dead-lettered mutation has this id.
    """
    if not engine.discard(record_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Dead-lettered mutation not found",
        )
    logger.info("Operator discarded mutation #%d", record_id)
