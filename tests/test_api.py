"""HTTP API: submit, poll, inspect errors, download, cancel and delete jobs."""

import asyncio
import csv
import io
import threading

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from app.jobs.coordinator import JobCoordinator
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.models import EntityType
from app.main import app, wire
from app.storage.artifacts import LocalArtifactStore
from app.storage.temp_uploads import TempUploadStore

from conftest import AUDIOBOOK_HEADER, audiobook_rows


@pytest_asyncio.fixture
async def client(coordinator, tmp_path):
    wire(coordinator, TempUploadStore(str(tmp_path / "uploads")))
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac


def _csv_bytes(header, rows):
    buf = io.StringIO()
    writer = csv.writer(buf)
    writer.writerow(header)
    writer.writerows(rows)
    return buf.getvalue().encode("utf-8")


async def _upload(client, entity_type, name, content):
    return await client.post(
        "/api/v1/imports",
        data={"entity_type": entity_type},
        files={"file": (name, content, "text/csv")},
    )


@pytest.mark.asyncio
async def test_health(client):
    resp = await client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "healthy"
    assert body["active_jobs"] == 0


@pytest.mark.asyncio
async def test_export_then_download(client, coordinator, entity_store):
    for n in range(1, 6):
        entity_store.upsert(EntityType.CATEGORIES, {"slug": f"cat-{n}", "name_fa": f"دسته {n}"})

    resp = await client.post("/api/v1/exports", json={"entity_type": "categories", "format": "csv"})
    assert resp.status_code == 202
    job_id = resp.json()["job_id"]
    await coordinator.dispatcher.join(job_id)

    body = (await client.get(f"/api/v1/jobs/{job_id}")).json()
    assert body["status"] == "completed"
    assert body["kind"] == "export"
    assert body["progress"] == {"total": 5, "processed": 5, "successful": 5, "failed": 0,
                                "percent": 100.0}
    assert body["artifact"]["expired"] is False

    url = (await client.get(f"/api/v1/jobs/{job_id}/download-url")).json()["url"]
    assert url == f"http://test/api/v1/jobs/{job_id}/download"

    download = await client.get(f"/api/v1/jobs/{job_id}/download")
    assert download.status_code == 200
    assert download.headers["content-type"].startswith("text/csv")
    lines = download.content.decode("utf-8-sig").splitlines()
    assert lines[0] == "id,slug,name_fa,name_en,is_active,sort_order"
    assert len(lines) == 6


@pytest.mark.asyncio
async def test_export_rejects_unknown_entity_type(client):
    resp = await client.post("/api/v1/exports", json={"entity_type": "invoices"})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_import_reports_first_errors_and_full_list(client, coordinator):
    content = _csv_bytes(AUDIOBOOK_HEADER, audiobook_rows(12, invalid={1, 4, 6, 8, 11}))
    resp = await _upload(client, "audiobooks", "books.csv", content)
    assert resp.status_code == 202
    job_id = resp.json()["job_id"]
    await coordinator.dispatcher.join(job_id)

    body = (await client.get(f"/api/v1/jobs/{job_id}")).json()
    assert body["status"] == "completed"
    assert body["progress"]["successful"] == 7
    assert body["progress"]["failed"] == 5
    assert [e["row"] for e in body["errors"]] == [1, 4, 6]
    assert body["remaining_errors"] == 2
    assert "artifact" not in body

    errors = (await client.get(f"/api/v1/jobs/{job_id}/errors", params={"offset": 3})).json()
    assert errors["total"] == 5
    assert [e["row"] for e in errors["errors"]] == [8, 11]
    assert errors["errors"][0]["messages"] == ["title_fa is required"]


@pytest.mark.asyncio
async def test_unparseable_upload_fails_the_job(client, coordinator):
    resp = await _upload(client, "categories", "cats.csv", b"slug,slug\na,b\n")
    job_id = resp.json()["job_id"]
    await coordinator.dispatcher.join(job_id)

    body = (await client.get(f"/api/v1/jobs/{job_id}")).json()
    assert body["status"] == "failed"
    assert body["error"].startswith("Could not parse cats.csv")
    assert body["progress"]["processed"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("entity_type, name", [
    ("users", "users.csv"),
    ("audiobooks", "books.txt"),
])
async def test_import_rejections(client, entity_type, name):
    resp = await _upload(client, entity_type, name, b"a\n1\n")
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_list_jobs_filters_by_kind(client, coordinator):
    export_id = (await client.post("/api/v1/exports", json={"entity_type": "users"})).json()["job_id"]
    resp = await _upload(client, "categories", "cats.csv", _csv_bytes(["slug", "name_fa"], [["a", "b"]]))
    import_id = resp.json()["job_id"]
    await coordinator.dispatcher.join(export_id)
    await coordinator.dispatcher.join(import_id)

    jobs = (await client.get("/api/v1/jobs", params={"kind": "import"})).json()["jobs"]
    assert [j["job_id"] for j in jobs] == [import_id]
    everything = (await client.get("/api/v1/jobs")).json()["jobs"]
    assert {j["job_id"] for j in everything} == {export_id, import_id}


@pytest.mark.asyncio
async def test_unknown_job_is_404(client):
    for method, path in [
        ("GET", "/api/v1/jobs/missing"),
        ("GET", "/api/v1/jobs/missing/errors"),
        ("GET", "/api/v1/jobs/missing/download-url"),
        ("GET", "/api/v1/jobs/missing/download"),
        ("POST", "/api/v1/jobs/missing/cancel"),
        ("DELETE", "/api/v1/jobs/missing"),
    ]:
        resp = await client.request(method, path)
        assert resp.status_code == 404, path


@pytest.mark.asyncio
async def test_import_jobs_have_nothing_to_download(client, coordinator):
    resp = await _upload(client, "categories", "cats.csv", _csv_bytes(["slug", "name_fa"], [["a", "b"]]))
    job_id = resp.json()["job_id"]
    await coordinator.dispatcher.join(job_id)

    assert (await client.get(f"/api/v1/jobs/{job_id}/download")).status_code == 404
    assert (await client.get(f"/api/v1/jobs/{job_id}/download-url")).status_code == 404


@pytest.mark.asyncio
async def test_cancel_finished_job_is_a_no_op(client, coordinator):
    resp = await _upload(client, "categories", "cats.csv", _csv_bytes(["slug", "name_fa"], [["a", "b"]]))
    job_id = resp.json()["job_id"]
    await coordinator.dispatcher.join(job_id)

    body = (await client.post(f"/api/v1/jobs/{job_id}/cancel")).json()
    assert body == {"job_id": job_id, "status": "completed", "cancel_requested": False}


@pytest.mark.asyncio
async def test_delete_job(client, coordinator):
    job_id = (await client.post("/api/v1/exports", json={"entity_type": "audit_logs"})).json()["job_id"]
    await coordinator.dispatcher.join(job_id)

    assert (await client.delete(f"/api/v1/jobs/{job_id}")).status_code == 204
    assert (await client.get(f"/api/v1/jobs/{job_id}")).status_code == 404


@pytest.mark.asyncio
async def test_export_filters(client, coordinator, entity_store):
    entity_store.upsert(EntityType.USERS, {"email": "a@example.com", "role": "admin"})
    entity_store.upsert(EntityType.USERS, {"email": "b@example.com", "role": "listener"})

    resp = await client.post("/api/v1/exports",
                             json={"entity_type": "users", "filters": {"role": "admin"}})
    assert resp.status_code == 202
    job_id = resp.json()["job_id"]
    await coordinator.dispatcher.join(job_id)

    body = (await client.get(f"/api/v1/jobs/{job_id}")).json()
    assert body["filters"] == {"role": "admin"}
    assert body["progress"]["total"] == 1

    bad = await client.post("/api/v1/exports",
                            json={"entity_type": "users", "filters": {"email": "a@example.com"}})
    assert bad.status_code == 400
    assert "allowed: role" in bad.json()["detail"]


class SlowArtifactStore(LocalArtifactStore):
    """Local artifacts whose URL signing and deletion stall until released."""

    def __init__(self, base_dir):
        super().__init__(base_dir, public_base_url="http://test")
        self.entered = threading.Event()
        self.release = threading.Event()
        self.stalled_event_loop = False

    def _stall(self):
        self.entered.set()
        if not self.release.wait(timeout=2):
            self.stalled_event_loop = True

    def download_url(self, job_id, path, max_ttl_seconds=None):
        self._stall()
        return super().download_url(job_id, path, max_ttl_seconds)

    def delete(self, path):
        self._stall()
        super().delete(path)


async def _while_storage_stalls(artifacts, request):
    artifacts.entered.clear()
    artifacts.release.clear()
    task = asyncio.create_task(request)
    assert await asyncio.to_thread(artifacts.entered.wait, 5)
    artifacts.release.set()
    return await task


@pytest.mark.asyncio
async def test_storage_calls_run_off_the_event_loop(job_store, entity_store, tmp_path):
    artifacts = SlowArtifactStore(str(tmp_path / "exports"))
    dispatcher = InProcessQueue(job_store)
    await dispatcher.start()
    coord = JobCoordinator(job_store, dispatcher, entity_store, artifacts)
    wire(coord, TempUploadStore(str(tmp_path / "uploads")))
    try:
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            job_id = (await ac.post("/api/v1/exports", json={"entity_type": "users"})).json()["job_id"]
            await dispatcher.join(job_id)

            url = await _while_storage_stalls(artifacts, ac.get(f"/api/v1/jobs/{job_id}/download-url"))
            assert url.status_code == 200
            deleted = await _while_storage_stalls(artifacts, ac.delete(f"/api/v1/jobs/{job_id}"))
            assert deleted.status_code == 204
    finally:
        artifacts.release.set()
        await dispatcher.stop()

    assert not artifacts.stalled_event_loop
