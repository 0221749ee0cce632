"""Parasto Bulk Import/Export Job Service - FastAPI application."""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import Settings, settings
from app.api.v1.router import v1_router
from app.api.v1.health import router as health_root_router
from app.api.v1 import exports as exports_api
from app.api.v1 import health as health_api
from app.api.v1 import imports as imports_api
from app.api.v1 import jobs as jobs_api
from app.db.entity_store import EntityStore, InMemoryEntityStore, SupabaseEntityStore
from app.db.supabase_client import get_supabase
from app.entities.writer import EntityWriter
from app.jobs.coordinator import JobCoordinator
from app.jobs.in_process_queue import InProcessQueue
from app.jobs.job_store import JobRecordStore
from app.jobs.persistence import SupabaseJobPersistence
from app.jobs.sweeper import ExpirySweeper
from app.storage.artifacts import ArtifactStore, LocalArtifactStore, SupabaseArtifactStore
from app.storage.temp_uploads import TempUploadStore

logger = logging.getLogger("app")


def build_entity_store(cfg: Settings) -> EntityStore:
    if cfg.entity_store_backend == "supabase":
        return SupabaseEntityStore(get_supabase())
    if cfg.entity_store_backend == "memory":
        return InMemoryEntityStore()
    raise ValueError(f"Unknown entity_store_backend '{cfg.entity_store_backend}'")


def build_artifact_store(cfg: Settings) -> ArtifactStore:
    if cfg.artifact_backend == "supabase":
        return SupabaseArtifactStore(
            get_supabase(), cfg.artifact_bucket, cfg.signed_url_ttl_seconds
        )
    if cfg.artifact_backend == "local":
        return LocalArtifactStore(cfg.artifact_dir or None, cfg.public_base_url)
    raise ValueError(f"Unknown artifact_backend '{cfg.artifact_backend}'")


def build_job_store(cfg: Settings) -> JobRecordStore:
    if cfg.job_persistence == "supabase":
        persistence = SupabaseJobPersistence(get_supabase(), cfg.jobs_table)
        store = JobRecordStore(persistence)
        try:
            restored = store.restore(persistence.load_all())
            logger.info("Restored %d job record(s)", restored)
        except Exception as exc:
            logger.warning("Could not load persisted jobs: %s", exc)
        return store
    return JobRecordStore()


def build_coordinator(cfg: Settings) -> JobCoordinator:
    store = build_job_store(cfg)
    entities = build_entity_store(cfg)
    return JobCoordinator(
        store=store,
        dispatcher=InProcessQueue(store, max_workers=cfg.max_concurrent_jobs),
        entities=entities,
        artifacts=build_artifact_store(cfg),
        writer=EntityWriter(
            entities,
            max_retries=cfg.write_max_retries,
            retry_base_delay=cfg.write_retry_base_delay,
        ),
        retention=timedelta(hours=cfg.export_retention_hours),
        export_page_size=cfg.export_page_size,
        export_progress_interval=cfg.export_progress_interval,
        storage_failure_streak_threshold=cfg.storage_failure_streak_threshold,
        fail_on_storage_streak=cfg.fail_on_storage_streak,
    )


def wire(coordinator: JobCoordinator, uploads: TempUploadStore) -> None:
    """Hand the coordinator and upload store to the API modules."""
    jobs_api.set_coordinator(coordinator)
    exports_api.set_coordinator(coordinator)
    imports_api.set_coordinator(coordinator)
    imports_api.set_upload_store(uploads)
    health_api.set_coordinator(coordinator)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting Parasto job service on port %d", settings.port)
    logger.info(
        "Entity store: %s, artifacts: %s, job persistence: %s",
        settings.entity_store_backend, settings.artifact_backend, settings.job_persistence,
    )

    coordinator = build_coordinator(settings)
    uploads = TempUploadStore(settings.upload_dir or None, ttl_hours=settings.upload_ttl_hours)
    await coordinator.dispatcher.start()
    sweeper = ExpirySweeper(coordinator, uploads, settings.expiry_sweep_interval_seconds)
    await sweeper.start()
    logger.info("Job dispatcher started (max %d concurrent jobs)", settings.max_concurrent_jobs)

    wire(coordinator, uploads)

    yield

    logger.info("Shutting down Parasto job service")
    await sweeper.stop()
    await coordinator.dispatcher.stop()
    await asyncio.to_thread(coordinator.sweep_expired)


app = FastAPI(
    title="Parasto Import/Export Service",
    description="Bulk import and export jobs for the Parasto admin panel",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000", "*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Mount routers
app.include_router(health_root_router, tags=["health"])  # GET /health at root
app.include_router(v1_router)  # All /api/v1/* endpoints


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("app.main:app", host="0.0.0.0", port=settings.port)
