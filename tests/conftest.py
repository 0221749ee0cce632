"""
Pytest fixtures for the import/export job service tests.
"""

import csv
import threading

import pytest
import pytest_asyncio

from app.db.entity_store import InMemoryEntityStore
from app.entities.writer import EntityWriter
from app.jobs.coordinator import JobCoordinator
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.job_store import JobRecordStore
from app.storage.artifacts import LocalArtifactStore


class GatedEntityStore(InMemoryEntityStore):
    """In-memory store whose writes block until the test opens the gate."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.gate = threading.Event()

    def upsert(self, entity_type, record):
        self.entered.set()
        self.gate.wait(timeout=10)
        super().upsert(entity_type, record)


@pytest.fixture
def entity_store():
    return InMemoryEntityStore()


@pytest.fixture
def artifact_dir(tmp_path):
    return tmp_path / "exports"


@pytest.fixture
def artifact_store(artifact_dir):
    return LocalArtifactStore(str(artifact_dir), public_base_url="http://test")


@pytest.fixture
def job_store():
    return JobRecordStore()


@pytest_asyncio.fixture
async def coordinator(job_store, entity_store, artifact_store):
    dispatcher = InProcessQueue(job_store, max_workers=4)
    await dispatcher.start()
    coord = JobCoordinator(
        store=job_store,
        dispatcher=dispatcher,
        entities=entity_store,
        artifacts=artifact_store,
        writer=EntityWriter(entity_store, retry_base_delay=0),
        export_page_size=50,
        export_progress_interval=10,
    )
    yield coord
    await dispatcher.stop()


@pytest.fixture
def wait_for_job():
    async def _wait(coordinator, job_id):
        await coordinator.dispatcher.join(job_id)
        return coordinator.get(job_id)
    return _wait


@pytest.fixture
def write_csv(tmp_path):
    """Write a CSV upload and return its path."""
    def _write(name, header, rows):
        path = tmp_path / name
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(header)
            writer.writerows(rows)
        return str(path)
    return _write


def audiobook_rows(count, invalid=()):
    """`count` audiobook rows; rows whose 1-based number is in `invalid` lack a title."""
    rows = []
    for n in range(1, count + 1):
        title = "" if n in invalid else f"Book {n}"
        rows.append([title, f"Title {n}", str(1000 * n), "approved"])
    return rows


AUDIOBOOK_HEADER = ["title_fa", "title_en", "price_toman", "status"]
