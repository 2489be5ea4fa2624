"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./status_sync.db"

    # SQLAlchemy pooling (Postgres only)
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # Gmail - paths relative to backend/ or set absolute
    credentials_path: str = "credentials.json"
    token_path: str = "token.pickle"
    gmail_query: str = (
        "from:(noreply OR no-reply OR careers OR recruiting OR hr OR talent OR jobs) "
        "OR subject:(interview OR application OR applied OR position OR hiring OR offer "
        "OR rejection OR \"next steps\" OR \"thank you\")"
    )
    gmail_page_size: int = 100
    # Retries for 5xx responses only; 429 is never retried inside a run
    gmail_max_retries: int = 3

    # Fetch window
    # Days back for the very first run, when no checkpoint exists yet
    sync_initial_lookback_days: int = 7
    sync_max_messages_per_run: int = 500

    # Classification
    classifier_backend: str = "openai"  # openai | rules
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    openai_temperature: float = 0.2
    classification_confidence_threshold: float = 0.6
    classification_max_retries: int = 2
    classification_retry_backoff_s: float = 1.0

    # Matching
    match_min_score: float = 0.5
    match_ambiguity_delta: float = 0.1
    match_recency_days: int = 30

    # Scheduling
    scheduler_enabled: bool = True
    scheduler_interval_hours: int = 6
    scheduler_daily_hour: int = 9
    scheduler_timezone: str = "UTC"

    # Run guard: "local" (in-process lock) or "redis" (shared across processes)
    run_guard_backend: str = "local"
    run_guard_key: str = "mailsync:status-sync:running"
    run_guard_timeout_s: int = 60 * 60

    # Redis (for Celery and the shared run guard)
    redis_url: str = "redis://localhost:6379/0"

    # Celery
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    # Auth - static API key for the sync endpoints
    api_key_header: str = "X-API-Key"
    api_key: str = ""

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
