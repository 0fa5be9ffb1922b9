"""FastAPI dependencies for API routes."""

from __future__ import annotations

from fastapi import Request

from possync.client.engine import SyncEngine


def get_engine(request: Request) -> SyncEngine:
    """Get sync engine from app state."""
    engine: SyncEngine = request.app.state.engine
    return engine
