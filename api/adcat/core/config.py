import re
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_TABLE_NAME_RE = re.compile(r"^[a-z_][a-z0-9_]*(\.[a-z_][a-z0-9_]*)?$")


class Settings(BaseSettings):
    app_name: str = "adcat-api"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    database_command_timeout_seconds: float = 60.0
    ads_table: str = "scraping_results"
    normalization_batch_size: int = Field(default=1000, gt=0)
    normalization_max_fix_passes: int = Field(default=10, ge=0)
    supabase_url: str | None = None
    supabase_anon_key: str | None = None
    auth_timeout_seconds: float = 5.0
    otel_enabled: bool = True
    otel_service_name: str = "adcat-api"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="ADCAT_", extra="ignore")

    @field_validator("ads_table")
    @classmethod
    def _validate_ads_table(cls, value: str) -> str:
        normalized = value.strip().lower()
        if not _TABLE_NAME_RE.match(normalized):
            raise ValueError("ads_table must be a plain SQL identifier, optionally schema-qualified")
        return normalized


@lru_cache
def get_settings() -> Settings:
    return Settings()
