from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    environment: str = "dev"
    api_base_url: str = "http://localhost:8000"
    module_id: str = "local-bonus-processor"
    api_key: str = "local-bonus-processor-key"
    request_timeout_seconds: float = 10.0
    poll_interval_seconds: float = 2.0
    max_backoff_seconds: float = 30.0
    claim_batch_size: int = 25
    claim_lease_seconds: int = 120
    referral_bonus_amount: float = 50.0
    otel_enabled: bool = True
    otel_service_name: str = "dental-staffing-bonus-worker"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="DS_WORKER_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
