"""Supabase-backed stores, exercised against a recording fake of the client."""

import re
from pathlib import Path
from types import SimpleNamespace

import httpx
import pytest
from postgrest.exceptions import APIError

from app.db.entity_store import (
    StorageError,
    StorageErrorKind,
    StoreUnavailableError,
    SupabaseEntityStore,
    classify_api_error,
)
from app.jobs.models import EntityType, Job, JobKind, JobStatus, RowError
from app.jobs.persistence import SupabaseJobPersistence, job_to_row, row_to_job
from app.storage.artifacts import SupabaseArtifactStore


class FakeQuery:
    def __init__(self, client, table):
        self.client = client
        self.calls = [("table", table)]

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return record

    def execute(self):
        self.client.queries.append(self.calls)
        if self.client.error is not None:
            raise self.client.error
        return self.client.responses.pop(0) if self.client.responses else SimpleNamespace(data=[], count=0)


class FakeClient:
    def __init__(self, responses=(), error=None):
        self.responses = list(responses)
        self.error = error
        self.queries = []

    def table(self, name):
        return FakeQuery(self, name)


def _call_names(query):
    return [c[0] for c in query]


def test_count_uses_exact_count():
    client = FakeClient([SimpleNamespace(data=[], count=42)])
    assert SupabaseEntityStore(client).count(EntityType.USERS) == 42
    assert client.queries[0][0] == ("table", "profiles")


def test_iter_rows_pages_through_every_range():
    pages = [
        SimpleNamespace(data=[{"id": 1}, {"id": 2}]),
        SimpleNamespace(data=[{"id": 3}, {"id": 4}]),
        SimpleNamespace(data=[{"id": 5}]),
    ]
    client = FakeClient(pages)

    rows = list(SupabaseEntityStore(client).iter_rows(EntityType.AUDIOBOOKS, page_size=2))

    assert [r["id"] for r in rows] == [1, 2, 3, 4, 5]
    ranges = [c[1] for q in client.queries for c in q if c[0] == "range"]
    assert ranges == [(0, 1), (2, 3), (4, 5)]


def test_upsert_picks_conflict_column():
    client = FakeClient()
    store = SupabaseEntityStore(client)
    store.upsert(EntityType.CATEGORIES, {"slug": "drama", "name_fa": "درام"})
    store.upsert(EntityType.AUDIOBOOKS, {"title_fa": "کتاب"})

    upsert = [c for c in client.queries[0] if c[0] == "upsert"][0]
    assert upsert[2] == {"on_conflict": "slug"}
    assert "insert" in _call_names(client.queries[1])


@pytest.mark.parametrize("code, kind", [
    ("23505", StorageErrorKind.CONSTRAINT),
    ("42501", StorageErrorKind.PERMISSION),
    ("57014", StorageErrorKind.TRANSIENT),
])
def test_api_errors_are_classified(code, kind):
    error = classify_api_error(APIError({"code": code, "message": "boom"}))
    assert error.kind == kind
    assert error.message == "boom"


def test_api_error_on_upsert_becomes_storage_error():
    client = FakeClient(error=APIError({"code": "23503", "message": "fk violation"}))
    with pytest.raises(StorageError) as info:
        SupabaseEntityStore(client).upsert(EntityType.AUDIOBOOKS, {"title_fa": "x"})
    assert info.value.kind == StorageErrorKind.CONSTRAINT


def test_connection_refused_means_store_unavailable():
    client = FakeClient(error=httpx.ConnectError("refused"))
    with pytest.raises(StoreUnavailableError):
        SupabaseEntityStore(client).count(EntityType.AUDIOBOOKS)


@pytest.mark.parametrize("error", [
    httpx.ConnectError("refused"),
    httpx.ConnectTimeout("no route to host"),
])
def test_connect_phase_errors_mean_store_unavailable(error):
    client = FakeClient(error=error)
    with pytest.raises(StoreUnavailableError):
        SupabaseEntityStore(client).upsert(EntityType.AUDIOBOOKS, {"title_fa": "x"})


def test_timeouts_are_transient():
    client = FakeClient(error=httpx.ReadTimeout("slow"))
    with pytest.raises(StorageError) as info:
        SupabaseEntityStore(client).upsert(EntityType.AUDIOBOOKS, {"title_fa": "x"})
    assert info.value.retryable


def test_job_rows_keep_errors_in_error_log():
    job = Job(
        kind=JobKind.IMPORT,
        entity_type=EntityType.CREATORS,
        status=JobStatus.COMPLETED,
        failed_rows=1,
        processed_rows=1,
        errors=[RowError(row=4, messages=["display_name is required"])],
    )
    row = job_to_row(job)

    assert "errors" not in row
    assert row["error_log"][0]["row"] == 4
    assert row["status"] == "completed"
    assert row_to_job(row) == job


def test_persistence_upserts_by_id_and_loads_newest_first():
    job = Job(kind=JobKind.EXPORT, entity_type=EntityType.USERS)
    client = FakeClient([SimpleNamespace(data=None), SimpleNamespace(data=[job_to_row(job)])])
    persistence = SupabaseJobPersistence(client, "import_export_jobs")

    persistence.save(job)
    loaded = persistence.load_all()

    assert loaded == [job]
    assert client.queries[0][0] == ("table", "import_export_jobs")
    order = [c for c in client.queries[1] if c[0] == "order"][0]
    assert order[1:] == (("created_at",), {"desc": True})


class FakeBucket:
    def __init__(self):
        self.objects = {}
        self.options = {}

    def upload(self, path, file, file_options=None):
        with open(file, "rb") as f:
            self.objects[path] = f.read()
        self.options[path] = file_options

    def remove(self, paths):
        for path in paths:
            self.objects.pop(path, None)

    def create_signed_url(self, path, expires_in):
        return {"signedURL": f"https://storage.example/{path}?ttl={expires_in}"}


def _bucket_client(bucket):
    storage = SimpleNamespace(from_=lambda name: bucket)
    return SimpleNamespace(storage=storage)


def test_artifact_is_uploaded_only_after_a_clean_write():
    bucket = FakeBucket()
    store = SupabaseArtifactStore(_bucket_client(bucket), "admin-exports", 3600)

    with store.writer("job-1", "users.csv", "text/csv") as handle:
        handle.file.write(b"id\n1\n")

    assert handle.path == "exports/job-1/users.csv"
    assert handle.size_bytes == 5
    assert bucket.objects[handle.path] == b"id\n1\n"
    assert bucket.options[handle.path]["content-type"] == "text/csv"
    assert store.download_url("job-1", handle.path).endswith("?ttl=3600")

    with pytest.raises(RuntimeError):
        with store.writer("job-2", "users.csv") as failed:
            failed.file.write(b"partial")
            raise RuntimeError("serialization failed")
    assert failed.path not in bucket.objects

    store.delete(handle.path)
    assert bucket.objects == {}


def test_signed_url_is_capped_by_remaining_lifetime():
    bucket = FakeBucket()
    store = SupabaseArtifactStore(_bucket_client(bucket), "admin-exports", 3600)

    assert store.download_url("job-1", "exports/job-1/a.csv", max_ttl_seconds=600).endswith("?ttl=600")
    assert store.download_url("job-1", "exports/job-1/a.csv", max_ttl_seconds=7200).endswith("?ttl=3600")


def test_filters_become_equality_clauses():
    client = FakeClient([SimpleNamespace(data=[], count=3), SimpleNamespace(data=[{"id": 1}])])
    store = SupabaseEntityStore(client)
    filters = {"status": "approved", "category_id": 4}

    assert store.count(EntityType.AUDIOBOOKS, filters=filters) == 3
    assert list(store.iter_rows(EntityType.AUDIOBOOKS, page_size=10, filters=filters)) == [{"id": 1}]

    for query in client.queries:
        eqs = [c[1] for c in query if c[0] == "eq"]
        assert sorted(eqs) == [("category_id", 4), ("status", "approved")]


MIGRATIONS = Path(__file__).resolve().parent.parent / "supabase" / "migrations"


def test_job_rows_match_the_migrated_table():
    sql = "\n".join(p.read_text(encoding="utf-8") for p in sorted(MIGRATIONS.glob("*.sql")))
    table = re.search(r"CREATE TABLE IF NOT EXISTS import_export_jobs \((.*?)\n\);", sql, re.S)
    assert table is not None
    columns = set(re.findall(r"^  ([a-z_]+) [A-Z]", table.group(1), re.M))

    row = job_to_row(Job(kind=JobKind.EXPORT, entity_type=EntityType.USERS))
    assert set(row) == columns
