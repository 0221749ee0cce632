"""Export worker: stream an entity collection into a downloadable artifact."""

import logging
from datetime import timedelta
from typing import Any, Dict, Iterable, Iterator, Optional

from app.db.entity_store import EntityStore
from app.entities.catalog import get_spec
from app.io.codecs import FILE_EXTENSIONS, MEDIA_TYPES, write_rows
from app.jobs.job_store import JobUpdater
from app.jobs.models import EntityType, ExportFormat, Job, utcnow
from app.storage.artifacts import ArtifactStore

logger = logging.getLogger(__name__)


def export_filename(entity_type: EntityType, fmt: ExportFormat, job_id: str) -> str:
    return f"{entity_type.value}_{utcnow():%Y-%m-%d}_{job_id[:8]}.{FILE_EXTENSIONS[fmt]}"


class _ProgressCounter:
    """Passes rows through while reporting progress every `interval` rows."""

    def __init__(self, updater: JobUpdater, interval: int):
        self._updater = updater
        self._interval = max(1, interval)
        self._pending = 0

    def wrap(self, rows: Iterable[Dict[str, Any]]) -> Iterator[Dict[str, Any]]:
        for row in rows:
            yield row
            self._pending += 1
            if self._pending >= self._interval:
                self.flush()

    def flush(self) -> None:
        if self._pending:
            self._updater.add_progress(self._pending)
            self._pending = 0


def run_export(
    updater: JobUpdater,
    entity_type: EntityType,
    fmt: ExportFormat,
    *,
    store: EntityStore,
    artifacts: ArtifactStore,
    page_size: int = 1000,
    progress_interval: int = 100,
    retention: timedelta = timedelta(hours=24),
    filters: Optional[Dict[str, Any]] = None,
) -> Job:
    """Export every row of `entity_type` matching `filters` in `fmt`.

    Steps:
    1. Count matching rows and record total_rows
    2. Stream rows page by page through the codec into a staged artifact
    3. Publish the artifact, set path/size/expiry and complete the job

    Any failure fails the whole job with one message; the staged artifact
    is discarded so nothing half-written is ever downloadable.
    """
    job = updater.start()
    spec = get_spec(entity_type)
    filename = export_filename(entity_type, fmt, job.id)
    logger.info("Export %s started: %s as %s", job.id, entity_type.value, fmt.value)

    try:
        updater.set_total(store.count(entity_type, filters=filters))
        counter = _ProgressCounter(updater, progress_interval)
        with artifacts.writer(job.id, filename, MEDIA_TYPES[fmt]) as handle:
            written = write_rows(
                fmt,
                spec.export_columns,
                counter.wrap(store.iter_rows(entity_type, page_size=page_size, filters=filters)),
                handle.file,
            )
            counter.flush()
    except Exception as exc:
        logger.exception("Export %s failed", job.id)
        return updater.fail(f"Export failed: {type(exc).__name__}: {exc}")

    job = updater.complete(
        total_rows=written,
        file_name=filename,
        artifact_path=handle.path,
        artifact_size_bytes=handle.size_bytes,
        expires_at=utcnow() + retention,
    )
    logger.info(
        "Export %s completed: %d rows, %d bytes", job.id, written, handle.size_bytes
    )
    return job
