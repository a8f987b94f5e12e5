from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "casting-pipeline-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    job_max_attempts: int = 3
    job_retry_base_seconds: int = 30
    job_retry_max_seconds: int = 600
    intake_recency_window_hours: float = 24.0
    intake_min_text_length: int = 30
    webhook_secret: str | None = None
    webhook_verify_token: str | None = None
    machine_api_key_hashes: dict[str, str] = {}
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    classifier_base_url: str = "https://api.openai.com/v1"
    classifier_api_key: str | None = None
    classifier_model: str = "gpt-4o-mini"
    classifier_timeout_seconds: float = 30.0
    worker_id: str | None = None
    worker_queues: list[str] = ["extraction", "moderation_intake"]
    worker_batch_size: int = 5
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 15.0
    claim_lease_seconds: int = 120
    lease_reaper_interval_seconds: float = 15.0
    lease_reaper_batch_size: int = 100
    health_backlog_threshold: int = 10
    health_success_rate_floor: float = 50.0
    health_success_window_hours: float = 24.0
    health_stale_after_hours: float = 2.0
    otel_enabled: bool = True
    otel_service_name: str = "casting-pipeline"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="CP_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
