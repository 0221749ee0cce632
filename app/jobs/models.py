"""Job record data model for bulk import/export processing."""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field
import uuid


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobKind(str, Enum):
    EXPORT = "export"
    IMPORT = "import"


class EntityType(str, Enum):
    AUDIOBOOKS = "audiobooks"
    CREATORS = "creators"
    USERS = "users"
    CATEGORIES = "categories"
    ANALYTICS = "analytics"
    AUDIT_LOGS = "audit_logs"


# Users, analytics and audit logs are export-only
IMPORTABLE_TYPES = frozenset({
    EntityType.AUDIOBOOKS,
    EntityType.CREATORS,
    EntityType.CATEGORIES,
})


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
})


class ExportFormat(str, Enum):
    CSV = "csv"
    XLSX = "xlsx"
    JSON = "json"


class RowError(BaseModel):
    """All problems found for one input row (1-based, header excluded)."""
    model_config = ConfigDict(frozen=True)

    row: int
    messages: List[str]
    data: Optional[Dict[str, Any]] = None


class Job(BaseModel):
    """Immutable snapshot of one import or export job.

    The job store replaces the whole snapshot on every change, so a reader
    holding a Job never observes half-applied counter updates.
    """
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: JobKind
    entity_type: EntityType
    status: JobStatus = JobStatus.PENDING
    format: Optional[ExportFormat] = None
    filters: Dict[str, Any] = Field(default_factory=dict)
    file_name: str = ""
    source_path: Optional[str] = None

    total_rows: int = 0
    processed_rows: int = 0
    successful_rows: int = 0
    failed_rows: int = 0
    errors: List[RowError] = Field(default_factory=list)
    error: Optional[str] = None
    storage_alert: Optional[str] = None

    artifact_path: Optional[str] = None
    artifact_size_bytes: Optional[int] = None
    expires_at: Optional[datetime] = None
    expired: bool = False

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def progress(self) -> float:
        """Percentage of rows processed (0-100)."""
        if self.total_rows == 0:
            return 100.0 if self.status == JobStatus.COMPLETED else 0.0
        return round(100.0 * self.processed_rows / self.total_rows, 1)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expired:
            return True
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def error_summary(self, limit: int) -> Dict[str, Any]:
        """First `limit` row errors plus how many more exist."""
        shown = self.errors[:limit]
        return {
            "errors": [e.model_dump() for e in shown],
            "remaining": max(0, len(self.errors) - len(shown)),
        }
