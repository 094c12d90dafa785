from dataclasses import dataclass
import os

from dotenv import load_dotenv

from ingestgate.errors import ConfigurationError


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    api_key: str
    market_data_base_url: str
    log_level: str
    candidate_dir: str
    db_pool_size: int
    request_delay_seconds: float
    http_timeout_seconds: float
    fetch_max_retries: int
    fetch_retry_backoff_seconds: float
    dispatch_batch_size: int
    dispatch_max_concurrency: int
    dispatch_success_threshold: float
    batch_timeout_seconds: float
    freshness_window_minutes: int
    lock_ttl_seconds: int
    schedule_hour_utc: int
    schedule_minute_utc: int
    scheduled_jobs: tuple[str, ...]


def get_settings() -> Settings:
    scheduled_jobs = os.getenv("SCHEDULED_JOBS", "token_prices,lending_markets")
    return Settings(
        app_name=os.getenv("APP_NAME", "ingestgate"),
        database_url=os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./ingestgate.db"),
        api_key=os.getenv("DEFILLAMA_API_KEY", ""),
        market_data_base_url=os.getenv("MARKET_DATA_BASE_URL", "https://pro-api.llama.fi"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        candidate_dir=os.getenv("CANDIDATE_DIR", "./candidates"),
        db_pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
        request_delay_seconds=float(os.getenv("REQUEST_DELAY_SECONDS", "0.12")),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
        fetch_max_retries=int(os.getenv("FETCH_MAX_RETRIES", "2")),
        fetch_retry_backoff_seconds=float(os.getenv("FETCH_RETRY_BACKOFF_SECONDS", "0.5")),
        dispatch_batch_size=int(os.getenv("DISPATCH_BATCH_SIZE", "500")),
        dispatch_max_concurrency=int(os.getenv("DISPATCH_MAX_CONCURRENCY", "3")),
        dispatch_success_threshold=float(os.getenv("DISPATCH_SUCCESS_THRESHOLD", "0.7")),
        batch_timeout_seconds=float(os.getenv("BATCH_TIMEOUT_SECONDS", "0")),
        freshness_window_minutes=int(os.getenv("FRESHNESS_WINDOW_MINUTES", "180")),
        lock_ttl_seconds=int(os.getenv("LOCK_TTL_SECONDS", "3600")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "2")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "0")),
        scheduled_jobs=tuple(name.strip() for name in scheduled_jobs.split(",") if name.strip()),
    )


def require_runtime_config(settings: Settings) -> None:
    missing: list[str] = []
    if not settings.database_url:
        missing.append("DATABASE_URL")
    if not settings.api_key:
        missing.append("DEFILLAMA_API_KEY")
    if missing:
        raise ConfigurationError(missing)
