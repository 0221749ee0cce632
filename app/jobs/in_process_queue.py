"""In-process job dispatch using asyncio for local and single-node deployments.

Each job gets its own asyncio task; the synchronous worker runs in a bounded
thread pool so file and storage I/O never block the event loop. Jobs share
nothing except the job store. No external dependencies (Redis, Celery) needed.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Set

from app.jobs.dispatcher import JobDispatcher, WorkFn
from app.jobs.job_store import JobRecordStore

logger = logging.getLogger(__name__)


class InProcessQueue(JobDispatcher):
    """Local async dispatcher. Runs up to `max_workers` jobs concurrently."""

    def __init__(self, store: JobRecordStore, max_workers: int = 4):
        self._store = store
        self._max_workers = max_workers
        self._executor: Optional[ThreadPoolExecutor] = None
        self._tasks: Dict[str, asyncio.Task] = {}

    async def submit(self, job_id: str, work: WorkFn) -> str:
        if self._executor is None:
            raise RuntimeError("Dispatcher not started")
        if job_id in self._tasks:
            raise ValueError(f"Job {job_id} already has a worker")
        task = asyncio.create_task(self._run(job_id, work))
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return job_id

    def active_jobs(self) -> Set[str]:
        return set(self._tasks)

    async def start(self) -> None:
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers, thread_name_prefix="job-worker"
        )

    async def stop(self) -> None:
        """Wait for in-flight workers, then shut the pool down."""
        tasks = list(self._tasks.values())
        if tasks:
            logger.info("Waiting for %d running job(s) to finish", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    async def join(self, job_id: str) -> None:
        """Wait until the job's worker has finished (used by tests and shutdown)."""
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.shield(task)

    async def _run(self, job_id: str, work: WorkFn) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(self._executor, work)
        except Exception as e:
            # Last resort: workers record their own failures, this catches bugs
            logger.exception("Worker for job %s crashed", job_id)
            job = self._store.get(job_id)
            if job is not None and not job.is_terminal:
                self._store.updater(job_id).fail(f"{type(e).__name__}: {e}")
