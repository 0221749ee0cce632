"""Entity Writer: applies one validated record as a create-or-update."""

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from app.db.entity_store import EntityStore, StorageError
from app.jobs.models import EntityType

logger = logging.getLogger(__name__)


@dataclass
class WriteResult:
    error: Optional[StorageError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class EntityWriter:
    """Upserts single rows, retrying transient storage errors with backoff.

    Constraint and permission failures are returned immediately. An
    unreachable store (StoreUnavailableError) propagates to the caller,
    since it is a job-level fault rather than a problem with the row.
    """

    def __init__(
        self,
        store: EntityStore,
        max_retries: int = 3,
        retry_base_delay: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._store = store
        self._max_retries = max_retries
        self._retry_base_delay = retry_base_delay
        self._sleep = sleep

    def write(self, entity_type: EntityType, record: Dict[str, Any]) -> WriteResult:
        attempt = 0
        while True:
            try:
                self._store.upsert(entity_type, record)
                return WriteResult()
            except StorageError as exc:
                if not exc.retryable or attempt >= self._max_retries:
                    return WriteResult(error=exc)
                delay = self._retry_base_delay * (2 ** attempt)
                attempt += 1
                logger.warning(
                    "Write to %s failed (%s), retry %d/%d in %.1fs",
                    entity_type.value, exc, attempt, self._max_retries, delay,
                )
                self._sleep(delay)
