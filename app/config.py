"""Application configuration via environment variables."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_timeout_seconds: int = 30

    # Backends
    entity_store_backend: str = "memory"  # "memory" or "supabase"
    artifact_backend: str = "local"  # "local" or "supabase"
    job_persistence: str = "none"  # "none" or "supabase"
    jobs_table: str = "import_export_jobs"

    # Export artifacts
    artifact_dir: str = ""
    artifact_bucket: str = "admin-exports"
    export_retention_hours: int = 24
    signed_url_ttl_seconds: int = 3600
    public_base_url: str = ""
    export_page_size: int = 1000
    export_progress_interval: int = 100

    # Uploads
    upload_dir: str = ""
    upload_ttl_hours: int = 24
    max_upload_bytes: int = 50 * 1024 * 1024

    # Row writes
    write_max_retries: int = 3
    write_retry_base_delay: float = 0.5
    storage_failure_streak_threshold: int = 25
    fail_on_storage_streak: bool = False

    # Job processing
    max_concurrent_jobs: int = 4
    expiry_sweep_interval_seconds: int = 300
    error_display_limit: int = 3

    # Server
    port: int = 8001
    log_level: str = "INFO"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
