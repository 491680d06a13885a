from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "site-url-catalog"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    jobs_list_limit: int = 50
    gemini_api_key: str | None = None
    gemini_api_url: str = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"
    gemini_model: str = "gemini-2.5-pro"
    openai_api_key: str | None = None
    openai_api_url: str = "https://api.openai.com/v1/responses"
    openai_model: str = "gpt-5.1"
    guesser_timeout_seconds: float = 120.0
    probe_timeout_seconds: float = 10.0
    validity_concurrency: int = 5
    metadata_concurrency: int = 3
    probe_user_agent: str = "Mozilla/5.0 (compatible; SiteURLChecker/1.0)"
    otel_enabled: bool = True
    otel_service_name: str = "site-url-catalog"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0
    otel_log_correlation: bool = True

    model_config = SettingsConfigDict(env_prefix="SC_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
