"""Job Record Store - single source of truth for job state and progress.

Every mutation is applied under a lock by swapping in a new immutable Job
snapshot, so progress readers never see torn counters. Workers never touch
the store directly; they get a JobUpdater bound to their own job id.
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from app.jobs.models import (
    Job,
    JobKind,
    JobStatus,
    EntityType,
    RowError,
    TERMINAL_STATUSES,
    utcnow,
)
from app.jobs.persistence import JobPersistence

logger = logging.getLogger(__name__)

_ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.RUNNING, JobStatus.FAILED},
    JobStatus.RUNNING: {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED},
}

RESTART_INTERRUPTED_MESSAGE = "Interrupted by service restart"


class JobNotFoundError(KeyError):
    pass


class InvalidTransitionError(Exception):
    """Raised for any status change the job state machine does not allow."""


class JobInvariantError(Exception):
    """Raised when an update would break the job's counter invariants."""


class JobRecordStore:
    """Thread-safe map of job id -> latest Job snapshot."""

    def __init__(self, persistence: Optional[JobPersistence] = None):
        self._jobs: Dict[str, Job] = {}
        self._cancel_events: Dict[str, threading.Event] = {}
        self._lock = threading.Lock()
        self._persistence = persistence

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            return self._jobs.get(job_id)

    def list(
        self,
        kind: Optional[JobKind] = None,
        entity_type: Optional[EntityType] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Job]:
        """Newest first, optionally filtered by kind and entity type."""
        with self._lock:
            jobs = list(self._jobs.values())
        if kind is not None:
            jobs = [j for j in jobs if j.kind == kind]
        if entity_type is not None:
            jobs = [j for j in jobs if j.entity_type == entity_type]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        end = None if limit is None else offset + limit
        return jobs[offset:end]

    def cancel_requested(self, job_id: str) -> bool:
        event = self._cancel_events.get(job_id)
        return event is not None and event.is_set()

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def insert(self, job: Job) -> Job:
        if job.status != JobStatus.PENDING:
            raise InvalidTransitionError(f"New jobs must be pending, got {job.status.value}")
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Job {job.id} already exists")
            self._jobs[job.id] = job
            self._cancel_events[job.id] = threading.Event()
        self._persist(job)
        return job

    def delete(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if not job.is_terminal:
                raise InvalidTransitionError(f"Job {job_id} is still {job.status.value}")
            del self._jobs[job_id]
            self._cancel_events.pop(job_id, None)
        if self._persistence is not None:
            try:
                self._persistence.delete(job_id)
            except Exception as exc:
                logger.warning("Failed to delete persisted job %s: %s", job_id, exc)
        return job

    def request_cancel(self, job_id: str) -> bool:
        """Raise the cancellation flag for a running job.

        Returns True only for the call that actually registered the request;
        repeated calls and calls on non-running jobs change nothing.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            event = self._cancel_events.get(job_id)
            if job.status != JobStatus.RUNNING or event is None or event.is_set():
                return False
            event.set()
        logger.info("Cancellation requested for job %s", job_id)
        return True

    def mark_expired(self, job_id: str) -> Job:
        def apply(job: Job) -> Dict[str, Any]:
            if job.kind != JobKind.EXPORT or job.status != JobStatus.COMPLETED:
                raise InvalidTransitionError(f"Job {job_id} has no artifact to expire")
            return {"expired": True}

        return self._update(job_id, apply)

    def restore(self, jobs: List[Job]) -> int:
        """Load previously persisted jobs after a restart.

        Jobs that were still pending or running belonged to a dead process
        and are failed. Returns the number of jobs restored.
        """
        now = utcnow()
        interrupted = []
        with self._lock:
            for job in jobs:
                if job.status not in TERMINAL_STATUSES:
                    job = job.model_copy(update={
                        "status": JobStatus.FAILED,
                        "error": RESTART_INTERRUPTED_MESSAGE,
                        "completed_at": now,
                        "updated_at": now,
                    })
                    interrupted.append(job)
                self._jobs[job.id] = job
                self._cancel_events.setdefault(job.id, threading.Event())
        for job in interrupted:
            logger.warning("Job %s was interrupted by a restart", job.id)
            self._persist(job)
        return len(jobs)

    def updater(self, job_id: str) -> "JobUpdater":
        if self.get(job_id) is None:
            raise JobNotFoundError(job_id)
        return JobUpdater(self, job_id)

    def _update(self, job_id: str, fn: Callable[[Job], Dict[str, Any]]) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            changes = fn(job)
            new_status = changes.get("status", job.status)
            if new_status != job.status:
                if new_status not in _ALLOWED_TRANSITIONS.get(job.status, set()):
                    raise InvalidTransitionError(
                        f"Job {job_id}: {job.status.value} -> {new_status.value} not allowed"
                    )
            elif job.is_terminal:
                # Terminal jobs only accept the display-only expiry flag
                if set(changes) - {"expired"}:
                    raise InvalidTransitionError(f"Job {job_id} is already {job.status.value}")
            changes["updated_at"] = utcnow()
            updated = job.model_copy(update=changes)
            _check_invariants(updated)
            self._jobs[job_id] = updated
        self._persist(updated)
        return updated

    def _persist(self, job: Job) -> None:
        if self._persistence is None:
            return
        try:
            self._persistence.save(job)
        except Exception as exc:
            # The in-memory snapshot stays authoritative
            logger.warning("Failed to persist job %s: %s", job.id, exc)


def _check_invariants(job: Job) -> None:
    if job.processed_rows != job.successful_rows + job.failed_rows:
        raise JobInvariantError(
            f"Job {job.id}: processed={job.processed_rows} != "
            f"successful={job.successful_rows} + failed={job.failed_rows}"
        )
    if job.total_rows and job.processed_rows > job.total_rows:
        raise JobInvariantError(
            f"Job {job.id}: processed={job.processed_rows} > total={job.total_rows}"
        )
    if job.kind == JobKind.IMPORT and len(job.errors) != job.failed_rows:
        raise JobInvariantError(
            f"Job {job.id}: {len(job.errors)} errors recorded for {job.failed_rows} failed rows"
        )


class JobUpdater:
    """Narrow write capability handed to the single worker that owns a job."""

    def __init__(self, store: JobRecordStore, job_id: str):
        self._store = store
        self.job_id = job_id

    @property
    def cancel_requested(self) -> bool:
        return self._store.cancel_requested(self.job_id)

    def snapshot(self) -> Job:
        job = self._store.get(self.job_id)
        if job is None:
            raise JobNotFoundError(self.job_id)
        return job

    def start(self) -> Job:
        now = utcnow()
        return self._store._update(self.job_id, lambda job: {
            "status": JobStatus.RUNNING,
            "started_at": now,
        })

    def set_total(self, total_rows: int) -> Job:
        return self._store._update(self.job_id, lambda job: {"total_rows": total_rows})

    def record_success(self) -> Job:
        return self._store._update(self.job_id, lambda job: {
            "processed_rows": job.processed_rows + 1,
            "successful_rows": job.successful_rows + 1,
        })

    def record_failure(
        self,
        row: int,
        messages: List[str],
        data: Optional[Dict[str, Any]] = None,
    ) -> Job:
        error = RowError(row=row, messages=messages, data=data)
        return self._store._update(self.job_id, lambda job: {
            "processed_rows": job.processed_rows + 1,
            "failed_rows": job.failed_rows + 1,
            "errors": [*job.errors, error],
        })

    def add_progress(self, rows: int) -> Job:
        """Count `rows` more rows as written (exports are all-or-nothing per job)."""
        def apply(job: Job) -> Dict[str, Any]:
            processed = job.processed_rows + rows
            return {
                "processed_rows": processed,
                "successful_rows": job.successful_rows + rows,
                "total_rows": max(job.total_rows, processed),
            }

        return self._store._update(self.job_id, apply)

    def flag_storage_alert(self, message: str) -> Job:
        return self._store._update(self.job_id, lambda job: {"storage_alert": message})

    def complete(self, **fields: Any) -> Job:
        now = utcnow()
        return self._store._update(self.job_id, lambda job: {
            **fields,
            "status": JobStatus.COMPLETED,
            "completed_at": now,
        })

    def fail(self, message: str) -> Job:
        now = utcnow()
        return self._store._update(self.job_id, lambda job: {
            "status": JobStatus.FAILED,
            "error": message,
            "completed_at": now,
        })

    def cancel(self) -> Job:
        now = utcnow()
        return self._store._update(self.job_id, lambda job: {
            "status": JobStatus.CANCELLED,
            "completed_at": now,
        })
