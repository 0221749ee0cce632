"""Import worker: best-effort, continue-on-error bulk ingestion.

One bad row never aborts the batch. Only an unparseable file or an
unreachable store fails the job as a whole.
"""

import logging
import os
from typing import Any, Dict, Optional

from app.db.entity_store import StoreUnavailableError
from app.entities.validators import validate
from app.entities.writer import EntityWriter
from app.io.codecs import ParseError, read_rows
from app.jobs.job_store import JobUpdater
from app.jobs.models import EntityType, ExportFormat, Job

logger = logging.getLogger(__name__)


def _row_data(raw: Any) -> Dict[str, Any]:
    """Offending row as stored alongside its errors."""
    if not isinstance(raw, dict):
        return {"value": raw}
    return {str(k): v for k, v in raw.items() if k is not None}


class _FailureStreak:
    """Tracks consecutive storage failures that share the same cause."""

    def __init__(self):
        self.cause: Optional[str] = None
        self.count = 0

    def add(self, cause: str) -> int:
        if cause == self.cause:
            self.count += 1
        else:
            self.cause = cause
            self.count = 1
        return self.count

    def reset(self) -> None:
        self.cause = None
        self.count = 0


def run_import(
    updater: JobUpdater,
    source_path: str,
    entity_type: EntityType,
    *,
    writer: EntityWriter,
    fmt: ExportFormat = ExportFormat.CSV,
    streak_threshold: int = 25,
    fail_on_streak: bool = False,
) -> Job:
    job = updater.start()
    logger.info("Import %s started: %s from %s", job.id, entity_type.value, job.file_name)

    try:
        records = read_rows(source_path, fmt)
    except ParseError as exc:
        logger.warning("Import %s rejected: %s", job.id, exc)
        return updater.fail(f"Could not parse {os.path.basename(source_path)}: {exc}")
    except OSError as exc:
        return updater.fail(f"Could not read uploaded file: {exc}")

    updater.set_total(len(records))
    streak = _FailureStreak()

    for row_number, raw in enumerate(records, start=1):
        # Cancellation is only honoured between rows, never mid-write
        if updater.cancel_requested:
            job = updater.cancel()
            logger.info(
                "Import %s cancelled after %d/%d rows",
                job.id, job.processed_rows, job.total_rows,
            )
            return job

        result = validate(entity_type, raw)
        if not result.ok:
            updater.record_failure(row_number, result.errors, data=_row_data(raw))
            continue

        try:
            outcome = writer.write(entity_type, result.record)
        except StoreUnavailableError as exc:
            logger.error("Import %s: store unreachable at row %d: %s", job.id, row_number, exc)
            return updater.fail(f"Storage unavailable at row {row_number}: {exc}")

        if outcome.ok:
            streak.reset()
            updater.record_success()
            continue

        cause = str(outcome.error)
        updater.record_failure(row_number, [f"storage error: {cause}"], data=_row_data(raw))
        if streak.add(cause) == streak_threshold:
            message = f"{streak.count} consecutive rows failed with the same storage error: {cause}"
            logger.warning("Import %s: %s", job.id, message)
            updater.flag_storage_alert(message)
            if fail_on_streak:
                return updater.fail(message)

    job = updater.complete()
    logger.info(
        "Import %s completed: %d succeeded, %d failed",
        job.id, job.successful_rows, job.failed_rows,
    )
    return job
