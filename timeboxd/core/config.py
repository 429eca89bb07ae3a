from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "timeboxd"
    environment: str = "dev"
    database_url: str | None = None
    database_pool_min_size: int = 1
    database_pool_max_size: int = 10
    cache_backend: str = "postgres"
    film_ttl_hours: float = 168.0
    release_ttl_hours: float = 6.0
    tmdb_api_key: str = ""
    tmdb_base_url: str = "https://api.themoviedb.org/3"
    tmdb_timeout_seconds: float = 10.0
    tmdb_max_retries: int = 2
    tmdb_retry_backoff_seconds: float = 0.5
    tmdb_rate_per_second: float = 4.0
    tmdb_burst: int = 4
    fallback_countries: list[str] = ["US"]
    max_concurrent: int = 5
    recency_window_days: int = 0
    watchlist_max_age_years: int = 3
    letterboxd_base_url: str = "https://letterboxd.com"
    letterboxd_delay_ms: int = 250
    letterboxd_timeout_seconds: float = 15.0
    letterboxd_max_pages: int = 50
    letterboxd_film_links: bool = True
    user_agent: str = "timeboxd/0.1"
    otel_enabled: bool = True
    otel_service_name: str = "timeboxd"
    otel_exporter_otlp_endpoint: str | None = None
    otel_exporter_otlp_headers: str | None = None
    otel_trace_sample_ratio: float = 1.0

    model_config = SettingsConfigDict(env_prefix="TIMEBOXD_", extra="ignore")


@lru_cache
def get_settings() -> Settings:
    return Settings()
