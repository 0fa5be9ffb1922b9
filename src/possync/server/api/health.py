"""Health check API route."""

from __future__ import annotations

from fastapi import APIRouter

from possync.server.schemas import HealthResponse

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Check that the status server answers."""
    return HealthResponse(status="ok")
