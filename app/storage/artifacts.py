"""Export artifact storage with publish-on-success writes.

An artifact is written to a staging file first and only published once the
whole export has been serialized, so a failed export never leaves a
partial file behind under the artifact's name.
"""

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Optional

logger = logging.getLogger(__name__)


@dataclass
class ArtifactHandle:
    file: BinaryIO
    path: str
    size_bytes: int = 0


class ArtifactStore(ABC):
    """Abstract file collaborator for export artifacts."""

    @abstractmethod
    @contextmanager
    def writer(
        self,
        job_id: str,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> Iterator[ArtifactHandle]:
        """Yield a writable handle; publish on clean exit, discard on error."""
        ...

    @abstractmethod
    def delete(self, path: str) -> None:
        ...

    @abstractmethod
    def download_url(
        self, job_id: str, path: str, max_ttl_seconds: Optional[int] = None
    ) -> Optional[str]:
        """URL for fetching the artifact, valid for at most `max_ttl_seconds` where signed."""
        ...

    def local_path(self, path: str) -> Optional[str]:
        """Filesystem path for direct streaming, if the artifact is local."""
        return None


class LocalArtifactStore(ArtifactStore):
    """Artifacts on the local filesystem, served by the service's download endpoint."""

    def __init__(self, base_dir: Optional[str] = None, public_base_url: str = ""):
        if base_dir:
            self._base_dir = base_dir
        else:
            self._base_dir = os.path.join(tempfile.gettempdir(), "parasto_exports")
        os.makedirs(self._base_dir, exist_ok=True)
        self._public_base_url = public_base_url.rstrip("/")

    def get_job_dir(self, job_id: str) -> str:
        job_dir = os.path.join(self._base_dir, job_id)
        os.makedirs(job_dir, exist_ok=True)
        return job_dir

    @contextmanager
    def writer(self, job_id, filename, content_type="application/octet-stream"):
        final_path = os.path.join(self.get_job_dir(job_id), filename)
        staging_path = final_path + ".partial"
        handle = ArtifactHandle(file=open(staging_path, "wb"), path=f"{job_id}/{filename}")
        try:
            yield handle
            handle.file.close()
            os.replace(staging_path, final_path)
        except BaseException:
            handle.file.close()
            if os.path.exists(staging_path):
                os.remove(staging_path)
            raise
        handle.size_bytes = os.path.getsize(final_path)

    def local_path(self, path: str) -> Optional[str]:
        full = os.path.join(self._base_dir, path)
        return full if os.path.isfile(full) else None

    def delete(self, path: str) -> None:
        full = os.path.join(self._base_dir, path)
        if os.path.exists(full):
            os.remove(full)
        job_dir = os.path.dirname(full)
        if os.path.isdir(job_dir) and not os.listdir(job_dir):
            os.rmdir(job_dir)

    def download_url(
        self, job_id: str, path: str, max_ttl_seconds: Optional[int] = None
    ) -> Optional[str]:
        # Served by the service itself, which re-checks expiry on every request
        if self.local_path(path) is None:
            return None
        return f"{self._public_base_url}/api/v1/jobs/{job_id}/download"


class SupabaseArtifactStore(ArtifactStore):
    """Artifacts in a Supabase Storage bucket, downloaded through signed URLs."""

    def __init__(self, client, bucket: str, signed_url_ttl_seconds: int = 3600):
        self._client = client
        self._bucket = bucket
        self._ttl = signed_url_ttl_seconds

    def _files(self):
        return self._client.storage.from_(self._bucket)

    @contextmanager
    def writer(self, job_id, filename, content_type="application/octet-stream"):
        fd, staging_path = tempfile.mkstemp(suffix=".partial")
        handle = ArtifactHandle(file=os.fdopen(fd, "wb"), path=f"exports/{job_id}/{filename}")
        try:
            yield handle
            handle.file.close()
            handle.size_bytes = os.path.getsize(staging_path)
            self._files().upload(
                handle.path,
                staging_path,
                {"content-type": content_type, "upsert": "true"},
            )
        finally:
            handle.file.close()
            os.remove(staging_path)

    def delete(self, path: str) -> None:
        self._files().remove([path])

    def download_url(
        self, job_id: str, path: str, max_ttl_seconds: Optional[int] = None
    ) -> Optional[str]:
        ttl = self._ttl if max_ttl_seconds is None else max(1, min(self._ttl, max_ttl_seconds))
        try:
            response = self._files().create_signed_url(path, ttl)
        except Exception as exc:
            logger.warning("Could not sign download URL for %s: %s", path, exc)
            return None
        return response.get("signedURL") or response.get("signedUrl")
