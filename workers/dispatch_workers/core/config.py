from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    api_key: str = "local-admin-key"
    request_timeout_seconds: float = 30.0
    poll_interval_seconds: float = 5.0
    max_backoff_seconds: float = 60.0
    reconcile_interval_seconds: float = 300.0
    reconcile_batch_size: int = 200
    reconcile_dry_run: bool = False
    otel_enabled: bool = True
    otel_service_name: str = "fieldwork-dispatch-workers"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="FD_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
