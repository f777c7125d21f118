from functools import lru_cache

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "visibility-jobs"
    environment: str = "dev"
    log_level: str = "INFO"
    tick_interval_seconds: float = 5.0
    cleanup_interval_seconds: float = 3600.0
    job_retention_hours: float = 24.0
    job_max_attempts: int = 3
    job_retry_base_seconds: float = 5.0
    job_retry_max_seconds: float = 300.0
    job_retry_jitter_ratio: float = 0.5
    handler_timeout_seconds: float | None = 300.0
    pipeline_chain_priority: int = 5
    full_analysis_priority: int = 8
    freshness_ttl_overrides: dict[str, float] = Field(default_factory=dict)
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    otel_enabled: bool = True
    otel_service_name: str = "visibility-jobs"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="VJ_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
