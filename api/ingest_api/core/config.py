from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "crawl-ingest-api"
    environment: str = "dev"
    log_level: str = "INFO"
    api_key_header: str = "X-API-Key"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    public_base_url: str | None = None
    webhook_path: str = "/crawl/webhook"
    webhook_secret: str | None = None
    webhook_skip_signature: bool = False
    webhook_allow_reserialized_body: bool = True
    firecrawl_api_key: str | None = None
    firecrawl_base_url: str = "https://api.firecrawl.dev"
    firecrawl_page_limit: int = 15
    provider_submit_timeout_seconds: float = 30.0
    provider_sync_deadline_seconds: float = 360.0
    provider_poll_interval_seconds: float = 5.0
    llm_api_key: str | None = None
    llm_base_url: str | None = None
    llm_model: str = "gpt-4o-mini"
    llm_timeout_seconds: float = 60.0
    llm_max_input_chars: int = 100_000
    dispatch_batch_size: int = 20
    dispatch_concurrency: int = 5
    refresh_batch_size: int = 50
    normalize_batch_size: int = 20
    staleness_unverified_days: int = 7
    staleness_verified_days: int = 90
    otel_enabled: bool = True
    otel_service_name: str = "crawl-ingest-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="CRAWL_", extra="ignore")

    @property
    def webhook_callback_url(self) -> str | None:
        if not self.public_base_url:
            return None
        return f"{self.public_base_url.rstrip('/')}{self.webhook_path}"


@lru_cache
def get_settings() -> Settings:
    return Settings()
