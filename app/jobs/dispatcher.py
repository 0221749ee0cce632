"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import Callable, Set

from app.jobs.models import Job

WorkFn = Callable[[], Job]


class JobDispatcher(ABC):
    """Abstract interface for running job workers off the request path."""

    @abstractmethod
    async def submit(self, job_id: str, work: WorkFn) -> str:
        """Schedule `work` for the job and return immediately. Returns job_id."""
        ...

    @abstractmethod
    def active_jobs(self) -> Set[str]:
        """Ids of jobs whose worker has not finished yet."""
        ...

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
