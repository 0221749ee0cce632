"""Durable job records backed by a Supabase table."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from app.jobs.models import Job


class JobPersistence(ABC):
    """Stores one durable record per job snapshot."""

    @abstractmethod
    def save(self, job: Job) -> None:
        ...

    @abstractmethod
    def delete(self, job_id: str) -> None:
        ...

    @abstractmethod
    def load_all(self) -> List[Job]:
        ...


def job_to_row(job: Job) -> Dict[str, Any]:
    row = job.model_dump(mode="json")
    # Row errors are stored as an ordered sub-collection keyed by row number
    row["error_log"] = row.pop("errors")
    return row


def row_to_job(row: Dict[str, Any]) -> Job:
    data = dict(row)
    data["errors"] = data.pop("error_log", None) or []
    return Job.model_validate(data)


class SupabaseJobPersistence(JobPersistence):
    def __init__(self, client, table: str):
        self._client = client
        self._table = table

    def save(self, job: Job) -> None:
        self._client.table(self._table).upsert(job_to_row(job), on_conflict="id").execute()

    def delete(self, job_id: str) -> None:
        self._client.table(self._table).delete().eq("id", job_id).execute()

    def load_all(self) -> List[Job]:
        response = (
            self._client.table(self._table)
            .select("*")
            .order("created_at", desc=True)
            .execute()
        )
        return [row_to_job(row) for row in response.data or []]
