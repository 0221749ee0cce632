"""Temporary storage for uploaded import files with auto-cleanup."""

import os
import shutil
import tempfile
import time
from typing import Iterable, Optional


class TempUploadStore:
    """Manages uploaded import files (one directory per job) with TTL-based cleanup."""

    def __init__(self, base_dir: Optional[str] = None, ttl_hours: int = 24):
        if base_dir:
            self._base_dir = base_dir
        else:
            self._base_dir = os.path.join(tempfile.gettempdir(), "parasto_uploads")
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_hours * 3600

    def get_job_dir(self, job_id: str) -> str:
        """Get or create directory for a job's uploaded file."""
        job_dir = os.path.join(self._base_dir, job_id)
        os.makedirs(job_dir, exist_ok=True)
        return job_dir

    def get_upload_path(self, job_id: str, filename: str) -> str:
        return os.path.join(self.get_job_dir(job_id), os.path.basename(filename))

    def remove(self, job_id: str) -> None:
        shutil.rmtree(os.path.join(self._base_dir, job_id), ignore_errors=True)

    def cleanup_expired(self, keep: Iterable[str] = ()) -> int:
        """Remove upload directories older than TTL, except those in `keep`.

        Returns count of removed dirs.
        """
        keep = set(keep)
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            if entry in keep:
                continue
            job_dir = os.path.join(self._base_dir, entry)
            if not os.path.isdir(job_dir):
                continue
            mtime = os.path.getmtime(job_dir)
            if now - mtime > self._ttl_seconds:
                shutil.rmtree(job_dir, ignore_errors=True)
                removed += 1
        return removed
