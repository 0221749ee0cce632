"""Health check endpoint."""

import platform
import sys

from fastapi import APIRouter

from app.config import settings

router = APIRouter()

_coordinator = None


def set_coordinator(coordinator):
    global _coordinator
    _coordinator = coordinator


@router.get("/health")
async def health_check():
    """Service health, backends, and running job count."""
    active = len(_coordinator.dispatcher.active_jobs()) if _coordinator is not None else 0
    return {
        "status": "healthy" if _coordinator is not None else "starting",
        "entity_store_backend": settings.entity_store_backend,
        "artifact_backend": settings.artifact_backend,
        "active_jobs": active,
        "python_version": sys.version,
        "platform": platform.platform(),
    }
