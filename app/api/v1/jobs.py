"""Job management API: poll status, list, cancel, inspect errors, download artifacts."""

import asyncio
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Response
from fastapi.responses import FileResponse, RedirectResponse

from app.config import settings
from app.io.codecs import MEDIA_TYPES
from app.jobs.job_store import InvalidTransitionError, JobNotFoundError
from app.jobs.models import EntityType, Job, JobKind, JobStatus

router = APIRouter()

# These will be set by main.py during lifespan
_coordinator = None


def set_coordinator(coordinator):
    global _coordinator
    _coordinator = coordinator


def _require_coordinator():
    if _coordinator is None:
        raise HTTPException(status_code=503, detail="Job coordinator not initialized")
    return _coordinator


def _require_job(job_id: str) -> Job:
    job = _require_coordinator().get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


def job_response(job: Job, error_limit: Optional[int] = None) -> dict:
    """Shape a job snapshot for the admin UI.

    Only the first `error_limit` row errors are inlined, together with the
    number of remaining ones; GET /jobs/{id}/errors returns the full list.
    """
    limit = settings.error_display_limit if error_limit is None else error_limit
    summary = job.error_summary(limit)
    response = {
        "job_id": job.id,
        "kind": job.kind.value,
        "entity_type": job.entity_type.value,
        "status": job.status.value,
        "format": job.format.value if job.format else None,
        "file_name": job.file_name,
        "filters": job.filters,
        "progress": {
            "total": job.total_rows,
            "processed": job.processed_rows,
            "successful": job.successful_rows,
            "failed": job.failed_rows,
            "percent": job.progress,
        },
        "errors": summary["errors"],
        "remaining_errors": summary["remaining"],
        "created_at": job.created_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
    }

    if job.status == JobStatus.FAILED:
        response["error"] = job.error

    if job.storage_alert:
        response["storage_alert"] = job.storage_alert

    if job.kind == JobKind.EXPORT and job.status == JobStatus.COMPLETED:
        response["artifact"] = {
            "size_bytes": job.artifact_size_bytes,
            "expires_at": job.expires_at.isoformat() if job.expires_at else None,
            "expired": job.is_expired(),
        }

    return response


@router.get("/jobs")
async def list_jobs(
    kind: Optional[JobKind] = None,
    entity_type: Optional[EntityType] = None,
    limit: int = Query(20, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    """List jobs, newest first."""
    coordinator = _require_coordinator()
    jobs = coordinator.list(kind=kind, entity_type=entity_type, limit=limit, offset=offset)
    return {"jobs": [job_response(job) for job in jobs]}


@router.get("/jobs/{job_id}")
async def get_job(job_id: str):
    """Current status, progress counters and first row errors of a job."""
    return job_response(_require_job(job_id))


@router.get("/jobs/{job_id}/errors")
async def get_job_errors(
    job_id: str,
    offset: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
):
    """Full row-level error detail, in row order."""
    job = _require_job(job_id)
    errors = _require_coordinator().errors(job_id, offset=offset, limit=limit)
    return {
        "job_id": job.id,
        "total": len(job.errors),
        "offset": offset,
        "errors": [e.model_dump() for e in errors],
    }


@router.post("/jobs/{job_id}/cancel")
async def cancel_job(job_id: str):
    """Request cancellation; the import stops at its next row boundary."""
    coordinator = _require_coordinator()
    try:
        requested = coordinator.cancel(job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    job = coordinator.get(job_id)
    return {
        "job_id": job_id,
        "status": job.status.value,
        "cancel_requested": requested,
    }


@router.get("/jobs/{job_id}/download-url")
async def get_download_url(job_id: str):
    _require_job(job_id)
    # Signing a storage URL is a blocking network call
    url = await asyncio.to_thread(_require_coordinator().get_download_url, job_id)
    if url is None:
        raise HTTPException(status_code=404, detail="Export not available for download")
    return {"job_id": job_id, "url": url}


@router.get("/jobs/{job_id}/download")
async def download_export(job_id: str):
    """Stream a local artifact, or redirect to a signed storage URL."""
    coordinator = _require_coordinator()
    job = _require_job(job_id)
    if not coordinator.is_downloadable(job):
        raise HTTPException(status_code=404, detail="Export not available for download")

    path = coordinator.artifacts.local_path(job.artifact_path)
    if path is not None:
        return FileResponse(path, media_type=MEDIA_TYPES[job.format], filename=job.file_name)

    url = await asyncio.to_thread(coordinator.get_download_url, job_id)
    if url is None:
        raise HTTPException(status_code=404, detail="Artifact not found")
    return RedirectResponse(url)


@router.delete("/jobs/{job_id}", status_code=204)
async def delete_job(job_id: str):
    """Delete a finished job and its artifact."""
    coordinator = _require_coordinator()
    try:
        await asyncio.to_thread(coordinator.delete_job, job_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Job not found")
    except InvalidTransitionError as exc:
        raise HTTPException(status_code=409, detail=str(exc))
    return Response(status_code=204)
