from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "fieldwork-dispatch-api"
    environment: str = "dev"
    api_key_header: str = "X-API-Key"
    admin_api_key_hash: str | None = None

    # "postgrest" (Supabase REST), "postgres" (asyncpg) or "memory".
    store_backend: str = "postgrest"
    supabase_url: str | None = None
    supabase_service_key: str | None = None
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    store_timeout_seconds: float = 8.0

    # Orders and payouts may live in other projects; unset means "same as dispatch".
    commerce_supabase_url: str | None = None
    commerce_supabase_service_key: str | None = None
    commerce_database_url: str | None = None
    ledger_supabase_url: str | None = None
    ledger_supabase_service_key: str | None = None
    ledger_database_url: str | None = None

    # 0 keeps a descriptor for one logical operation only.
    schema_cache_ttl_seconds: float = 0.0
    schema_registry_version: str = "2024.1"
    assignments_table: str | None = None
    assignments_job_col: str | None = None
    assignments_pro_col: str | None = None
    assignments_pro_email_col: str | None = None
    assignments_state_col: str | None = None
    jobs_table: str | None = None
    jobs_id_col: str | None = None
    jobs_status_col: str | None = None

    orders_table: str = "h2s_orders"
    orders_limit: int = 1500
    payout_tables: str = (
        "h2s_payouts_ledger,h2s_dispatch_payouts_ledger,h2s_dispatch_payouts,dispatch_payouts,h2s_payouts,payouts"
    )
    pro_tables: str = "h2s_dispatch_pros,h2s_pros"
    payout_rate: float = 0.35
    saga_log_table: str = "dispatch_saga_log"

    otel_enabled: bool = True
    otel_service_name: str = "fieldwork-dispatch-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="FD_", extra="ignore")

    @property
    def payout_table_candidates(self) -> list[str]:
        return _split_csv(self.payout_tables)

    @property
    def pro_table_candidates(self) -> list[str]:
        return _split_csv(self.pro_tables)


def _split_csv(raw: str) -> list[str]:
    return [chunk.strip() for chunk in raw.split(",") if chunk.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
