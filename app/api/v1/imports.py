"""Import upload API: receive a CSV/XLSX/JSON file and start an import job."""

import os
import uuid

from fastapi import APIRouter, File, Form, HTTPException, UploadFile

from app.config import settings
from app.io.codecs import format_for_filename
from app.jobs.coordinator import UnsupportedEntityTypeError, UnsupportedFormatError
from app.jobs.models import EntityType, IMPORTABLE_TYPES
from app.api.v1.exports import JobSubmitResponse

router = APIRouter()

# Wired in during lifespan (same pattern as jobs.py / exports.py)
_coordinator = None
_uploads = None


def set_coordinator(coordinator):
    global _coordinator
    _coordinator = coordinator


def set_upload_store(store):
    global _uploads
    _uploads = store


@router.post("/imports", response_model=JobSubmitResponse, status_code=202)
async def create_import(
    entity_type: EntityType = Form(...),
    file: UploadFile = File(...),
):
    """Accept an upload, persist it, and start a best-effort import job."""
    if _coordinator is None or _uploads is None:
        raise HTTPException(status_code=503, detail="Job coordinator not initialized")

    if entity_type not in IMPORTABLE_TYPES:
        raise HTTPException(
            status_code=400,
            detail=f"Imports are not supported for '{entity_type.value}'. "
                   f"Valid: {sorted(t.value for t in IMPORTABLE_TYPES)}",
        )
    file_name = os.path.basename(file.filename or "")
    if format_for_filename(file_name) is None:
        raise HTTPException(status_code=400, detail="File must be .csv, .xlsx or .json")

    # Save the upload inside its job's directory before the job exists
    job_id = str(uuid.uuid4())
    upload_path = _uploads.get_upload_path(job_id, file_name)

    total = 0
    try:
        with open(upload_path, "wb") as dst:
            while True:
                chunk = await file.read(1024 * 1024)  # 1 MB chunks
                if not chunk:
                    break
                total += len(chunk)
                if total > settings.max_upload_bytes:
                    raise HTTPException(
                        status_code=413,
                        detail=f"File too large (max {settings.max_upload_bytes // (1024 * 1024)} MB)",
                    )
                dst.write(chunk)
    except HTTPException:
        _uploads.remove(job_id)
        raise
    except OSError as exc:
        _uploads.remove(job_id)
        raise HTTPException(status_code=500, detail=f"Failed to save upload: {exc}")

    try:
        await _coordinator.create_import_job(entity_type, upload_path, file_name, job_id=job_id)
    except (UnsupportedEntityTypeError, UnsupportedFormatError) as exc:
        _uploads.remove(job_id)
        raise HTTPException(status_code=400, detail=str(exc))

    return JobSubmitResponse(
        job_id=job_id,
        status="pending",
        message="Import accepted. Poll GET /api/v1/jobs/{id} for progress.",
    )
