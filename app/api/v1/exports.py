"""Export API: start an export job for an entity collection."""

from typing import Any, Dict, Optional

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from app.entities.catalog import UnsupportedFilterError
from app.jobs.models import EntityType, ExportFormat

router = APIRouter()

# Set by main.py during lifespan (same pattern as jobs.py)
_coordinator = None


def set_coordinator(coordinator):
    global _coordinator
    _coordinator = coordinator


class ExportRequest(BaseModel):
    entity_type: EntityType
    format: ExportFormat = ExportFormat.CSV
    filters: Optional[Dict[str, Any]] = None


class JobSubmitResponse(BaseModel):
    job_id: str
    status: str
    message: str


@router.post("/exports", response_model=JobSubmitResponse, status_code=202)
async def create_export(request: ExportRequest):
    """Submit an export job. Returns immediately with the job id."""
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Job coordinator not initialized")

    try:
        job_id = await _coordinator.create_export_job(
            request.entity_type, request.format, filters=request.filters
        )
    except UnsupportedFilterError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return JobSubmitResponse(
        job_id=job_id,
        status="pending",
        message="Export accepted. Poll GET /api/v1/jobs/{id} for status.",
    )
