"""Main API router that includes all sub-routers."""

from __future__ import annotations

from fastapi import APIRouter

from possync.server.api import health, status

router = APIRouter()

# Include all API routers
router.include_router(health.router)
router.include_router(status.router)
