"""Job Coordinator - public entry point for bulk import/export jobs.

Creates job records, hands each job to exactly one worker through the
dispatcher, and answers progress queries from the job store.
"""

import asyncio
import functools
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from app.db.entity_store import EntityStore
from app.entities.catalog import clean_filters
from app.entities.writer import EntityWriter
from app.io.codecs import format_for_filename
from app.jobs.dispatcher import JobDispatcher
from app.jobs.job_store import InvalidTransitionError, JobNotFoundError, JobRecordStore
from app.jobs.models import (
    EntityType,
    ExportFormat,
    IMPORTABLE_TYPES,
    Job,
    JobKind,
    JobStatus,
    RowError,
    utcnow,
)
from app.storage.artifacts import ArtifactStore
from app.workers.export_worker import run_export
from app.workers.import_worker import run_import

logger = logging.getLogger(__name__)


class UnsupportedEntityTypeError(ValueError):
    pass


class UnsupportedFormatError(ValueError):
    pass


class JobCoordinator:
    def __init__(
        self,
        store: JobRecordStore,
        dispatcher: JobDispatcher,
        entities: EntityStore,
        artifacts: ArtifactStore,
        writer: Optional[EntityWriter] = None,
        retention: timedelta = timedelta(hours=24),
        export_page_size: int = 1000,
        export_progress_interval: int = 100,
        storage_failure_streak_threshold: int = 25,
        fail_on_storage_streak: bool = False,
    ):
        self.store = store
        self.dispatcher = dispatcher
        self.entities = entities
        self.artifacts = artifacts
        self.writer = writer or EntityWriter(entities)
        self.retention = retention
        self.export_page_size = export_page_size
        self.export_progress_interval = export_progress_interval
        self.streak_threshold = storage_failure_streak_threshold
        self.fail_on_storage_streak = fail_on_storage_streak

    # ------------------------------------------------------------------
    # Job creation
    # ------------------------------------------------------------------

    async def create_export_job(
        self,
        entity_type: EntityType,
        fmt: ExportFormat = ExportFormat.CSV,
        filters: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Insert a pending export job and dispatch its worker. Returns the job id.

        Raises UnsupportedFilterError for filters the entity type does not allow.
        """
        filters = clean_filters(entity_type, filters)
        job = Job(kind=JobKind.EXPORT, entity_type=entity_type, format=fmt, filters=filters)
        # Inserting may write through to a remote job table
        job = await asyncio.to_thread(self.store.insert, job)
        work = functools.partial(
            run_export,
            self.store.updater(job.id),
            entity_type,
            fmt,
            store=self.entities,
            artifacts=self.artifacts,
            page_size=self.export_page_size,
            progress_interval=self.export_progress_interval,
            retention=self.retention,
            filters=filters,
        )
        await self.dispatcher.submit(job.id, work)
        logger.info("Export job %s queued (%s, %s)", job.id, entity_type.value, fmt.value)
        return job.id

    async def create_import_job(
        self,
        entity_type: EntityType,
        source_path: str,
        file_name: str,
        job_id: Optional[str] = None,
    ) -> str:
        """Insert a pending import job for an uploaded file and dispatch its worker."""
        if entity_type not in IMPORTABLE_TYPES:
            raise UnsupportedEntityTypeError(f"Imports are not supported for {entity_type.value}")
        fmt = format_for_filename(file_name)
        if fmt is None:
            raise UnsupportedFormatError(f"Unsupported import file type: {file_name}")

        fields = {"kind": JobKind.IMPORT, "entity_type": entity_type,
                  "file_name": file_name, "source_path": source_path}
        if job_id is not None:
            fields["id"] = job_id
        job = await asyncio.to_thread(self.store.insert, Job(**fields))
        work = functools.partial(
            run_import,
            self.store.updater(job.id),
            source_path,
            entity_type,
            writer=self.writer,
            fmt=fmt,
            streak_threshold=self.streak_threshold,
            fail_on_streak=self.fail_on_storage_streak,
        )
        await self.dispatcher.submit(job.id, work)
        logger.info("Import job %s queued (%s, %s)", job.id, entity_type.value, file_name)
        return job.id

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def cancel(self, job_id: str) -> bool:
        """Request cooperative cancellation of a running import.

        No-op (returns False) for pending, terminal, or export jobs, and for
        repeated requests. The worker stops at its next row boundary.
        """
        job = self._require(job_id)
        if job.kind != JobKind.IMPORT:
            return False
        return self.store.request_cancel(job_id)

    def delete_job(self, job_id: str) -> Job:
        """Remove a finished job's record and its artifact, if any."""
        job = self._require(job_id)
        if not job.is_terminal:
            raise InvalidTransitionError(f"Job {job_id} is still {job.status.value}")
        if job.artifact_path and not job.expired:
            self.artifacts.delete(job.artifact_path)
        return self.store.delete(job_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    def list(
        self,
        kind: Optional[JobKind] = None,
        entity_type: Optional[EntityType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Job]:
        return self.store.list(kind=kind, entity_type=entity_type, limit=limit, offset=offset)

    def errors(self, job_id: str, offset: int = 0, limit: Optional[int] = None) -> List[RowError]:
        job = self._require(job_id)
        end = None if limit is None else offset + limit
        return job.errors[offset:end]

    def get_download_url(self, job_id: str, now: Optional[datetime] = None) -> Optional[str]:
        """URL for a completed, unexpired export's artifact, else None.

        The URL never outlives the artifact's own expiry.
        """
        now = now or utcnow()
        job = self.store.get(job_id)
        if job is None or not self.is_downloadable(job, now):
            return None
        max_ttl = None
        if job.expires_at is not None:
            max_ttl = max(1, int((job.expires_at - now).total_seconds()))
        return self.artifacts.download_url(job.id, job.artifact_path, max_ttl_seconds=max_ttl)

    @staticmethod
    def is_downloadable(job: Job, now: Optional[datetime] = None) -> bool:
        return (
            job.kind == JobKind.EXPORT
            and job.status == JobStatus.COMPLETED
            and job.artifact_path is not None
            and not job.is_expired(now)
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Delete artifacts whose retention window has passed.

        Only completed exports are considered, so a running job is never
        touched. The job record itself is kept and marked expired.
        """
        now = now or utcnow()
        removed = 0
        for job in self.store.list(kind=JobKind.EXPORT):
            if job.status != JobStatus.COMPLETED or job.expired or job.artifact_path is None:
                continue
            if job.expires_at is None or job.expires_at > now:
                continue
            try:
                self.artifacts.delete(job.artifact_path)
            except Exception as exc:
                logger.warning("Could not delete expired artifact %s: %s", job.artifact_path, exc)
                continue
            self.store.mark_expired(job.id)
            removed += 1
        if removed:
            logger.info("Expired %d export artifact(s)", removed)
        return removed

    def _require(self, job_id: str) -> Job:
        job = self.store.get(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job
