"""Periodic cleanup of expired export artifacts and stale uploads."""

import asyncio
import logging
from typing import Optional

from app.jobs.coordinator import JobCoordinator
from app.storage.temp_uploads import TempUploadStore

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Runs JobCoordinator.sweep_expired() on a fixed interval."""

    def __init__(
        self,
        coordinator: JobCoordinator,
        uploads: Optional[TempUploadStore] = None,
        interval_seconds: float = 300,
    ):
        self._coordinator = coordinator
        self._uploads = uploads
        self._interval = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._running = False

    def sweep_once(self) -> int:
        removed = self._coordinator.sweep_expired()
        if self._uploads is not None:
            # Uploads of jobs still being processed must stay on disk
            self._uploads.cleanup_expired(keep=self._coordinator.dispatcher.active_jobs())
        return removed

    async def start(self) -> None:
        self._running = True
        self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._interval)
            except asyncio.CancelledError:
                break
            try:
                await asyncio.to_thread(self.sweep_once)
            except Exception:
                logger.exception("Expiry sweep failed")
