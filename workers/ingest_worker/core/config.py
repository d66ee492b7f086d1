from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "local-ingest-worker"
    api_key: str = "local-ingest-worker-key"
    request_timeout_seconds: float = 30.0
    # Inline (sync mode) dispatch blocks until crawls finish on the API side.
    dispatch_timeout_seconds: float = 420.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    refresh_interval_seconds: float = 3600.0
    refresh_batch_size: int = 50
    dispatch_interval_seconds: float = 30.0
    dispatch_batch_size: int = 20
    normalize_interval_seconds: float = 300.0
    normalize_batch_size: int = 20
    otel_enabled: bool = True
    otel_service_name: str = "crawl-ingest-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CRAWL_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
