"""Entity storage collaborator: bulk reads for export, single-row upserts for import."""

import itertools
import threading
import uuid
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

import httpx
from postgrest.exceptions import APIError

from app.entities.catalog import EntitySpec, get_spec
from app.jobs.models import EntityType, utcnow


class StorageErrorKind(str, Enum):
    CONSTRAINT = "constraint"
    TRANSIENT = "transient"
    PERMISSION = "permission"


class StorageError(Exception):
    """A single storage operation failed; the row was not written."""

    def __init__(self, kind: StorageErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    @property
    def retryable(self) -> bool:
        return self.kind == StorageErrorKind.TRANSIENT

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


class StoreUnavailableError(Exception):
    """The backing store cannot be reached at all."""


class EntityStore(ABC):
    """Abstract storage contract consumed by the export and import workers."""

    @abstractmethod
    def count(self, entity_type: EntityType, filters: Optional[Dict[str, Any]] = None) -> int:
        ...

    @abstractmethod
    def iter_rows(
        self,
        entity_type: EntityType,
        page_size: int = 1000,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Dict[str, Any]]:
        """Yield every row matching `filters` (column equality), ordered by primary key, with no cap."""
        ...

    @abstractmethod
    def upsert(self, entity_type: EntityType, record: Dict[str, Any]) -> None:
        """Create or update exactly one row. Raises StorageError on failure."""
        ...


# PostgREST / Postgres error codes
_CONSTRAINT_CODES = {"23505", "23503", "23514", "23502", "22P02"}
_PERMISSION_CODES = {"42501", "PGRST301", "401", "403"}


def classify_api_error(exc: APIError) -> StorageError:
    code = str(getattr(exc, "code", "") or "")
    message = getattr(exc, "message", None) or str(exc)
    if code in _CONSTRAINT_CODES:
        return StorageError(StorageErrorKind.CONSTRAINT, message)
    if code in _PERMISSION_CODES:
        return StorageError(StorageErrorKind.PERMISSION, message)
    return StorageError(StorageErrorKind.TRANSIENT, message)


class SupabaseEntityStore(EntityStore):
    """Entity store backed by the hosted Supabase Postgres database."""

    def __init__(self, client):
        self._client = client

    def _table(self, spec: EntitySpec):
        return self._client.table(spec.table)

    @staticmethod
    def _filtered(query, filters: Optional[Dict[str, Any]]):
        for column, value in (filters or {}).items():
            query = query.eq(column, value)
        return query

    def count(self, entity_type: EntityType, filters: Optional[Dict[str, Any]] = None) -> int:
        spec = get_spec(entity_type)
        response = self._call(
            lambda: self._filtered(
                self._table(spec).select(spec.primary_key, count="exact"), filters
            ).limit(1).execute()
        )
        return response.count or 0

    def iter_rows(
        self,
        entity_type: EntityType,
        page_size: int = 1000,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Dict[str, Any]]:
        spec = get_spec(entity_type)
        columns = ",".join(spec.export_columns)
        start = 0
        while True:
            end = start + page_size - 1
            response = self._call(
                lambda: self._filtered(self._table(spec).select(columns), filters)
                .order(spec.primary_key)
                .range(start, end)
                .execute()
            )
            rows = response.data or []
            yield from rows
            if len(rows) < page_size:
                return
            start += page_size

    def upsert(self, entity_type: EntityType, record: Dict[str, Any]) -> None:
        spec = get_spec(entity_type)
        conflict_key = spec.conflict_key(record)
        if conflict_key is None:
            self._call(lambda: self._table(spec).insert(record).execute())
        else:
            self._call(
                lambda: self._table(spec).upsert(record, on_conflict=conflict_key).execute()
            )

    @staticmethod
    def _call(fn):
        try:
            return fn()
        except APIError as exc:
            raise classify_api_error(exc) from exc
        except (httpx.ConnectError, httpx.ConnectTimeout) as exc:
            # No connection was ever established: the store is unreachable
            raise StoreUnavailableError(f"Cannot reach Supabase: {exc}") from exc
        except (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError) as exc:
            raise StorageError(StorageErrorKind.TRANSIENT, f"{type(exc).__name__}: {exc}") from exc


class InMemoryEntityStore(EntityStore):
    """Thread-safe in-process store for local development and tests.

    Enforces primary-key and natural-key uniqueness the same way the
    database does, so constraint failures surface as StorageError.
    """

    def __init__(self, rows: Optional[Dict[EntityType, List[Dict[str, Any]]]] = None):
        self._tables: Dict[EntityType, Dict[Any, Dict[str, Any]]] = {t: {} for t in EntityType}
        self._sequences: Dict[EntityType, Iterator[int]] = {t: itertools.count(1) for t in EntityType}
        self._lock = threading.Lock()
        for entity_type, seed in (rows or {}).items():
            for record in seed:
                self.upsert(entity_type, record)

    @staticmethod
    def _matches(row: Dict[str, Any], filters: Optional[Dict[str, Any]]) -> bool:
        return all(row.get(column) == value for column, value in (filters or {}).items())

    def count(self, entity_type: EntityType, filters: Optional[Dict[str, Any]] = None) -> int:
        with self._lock:
            return sum(1 for row in self._tables[entity_type].values() if self._matches(row, filters))

    def iter_rows(
        self,
        entity_type: EntityType,
        page_size: int = 1000,
        filters: Optional[Dict[str, Any]] = None,
    ) -> Iterator[Dict[str, Any]]:
        spec = get_spec(entity_type)
        start = 0
        while True:
            with self._lock:
                ordered = sorted(
                    (r for r in self._tables[entity_type].values() if self._matches(r, filters)),
                    key=lambda r: str(r[spec.primary_key]) if spec.uuid_keys else r[spec.primary_key],
                )
                page = [
                    {col: row.get(col) for col in spec.export_columns}
                    for row in ordered[start:start + page_size]
                ]
            yield from page
            if len(page) < page_size:
                return
            start += page_size

    def rows(self, entity_type: EntityType) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(r) for r in self._tables[entity_type].values()]

    def upsert(self, entity_type: EntityType, record: Dict[str, Any]) -> None:
        spec = get_spec(entity_type)
        with self._lock:
            table = self._tables[entity_type]
            key = record.get(spec.primary_key)
            if key is None and spec.natural_key and record.get(spec.natural_key) is not None:
                for existing in table.values():
                    if existing.get(spec.natural_key) == record[spec.natural_key]:
                        key = existing[spec.primary_key]
                        break
            if key is not None and key in table:
                self._check_natural_key(spec, table, record, exclude=key)
                table[key] = {**table[key], **record}
                return
            self._check_natural_key(spec, table, record, exclude=None)
            if key is None:
                key = str(uuid.uuid4()) if spec.uuid_keys else next(self._sequences[entity_type])
            elif isinstance(key, int):
                # Keep the sequence ahead of explicit ids
                self._sequences[entity_type] = itertools.count(max(key + 1, next(self._sequences[entity_type])))
            table[key] = {
                "created_at": utcnow().isoformat(),
                **record,
                spec.primary_key: key,
            }

    @staticmethod
    def _check_natural_key(spec: EntitySpec, table, record, exclude) -> None:
        if not spec.natural_key or record.get(spec.natural_key) is None:
            return
        for key, existing in table.items():
            if key != exclude and existing.get(spec.natural_key) == record[spec.natural_key]:
                raise StorageError(
                    StorageErrorKind.CONSTRAINT,
                    f"duplicate key value violates unique constraint on {spec.natural_key}",
                )
