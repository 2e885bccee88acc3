"""Application configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """App settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./mailsync.db"

    # SQLAlchemy pooling (Postgres only)
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Redis (for Celery)
    redis_url: str = "redis://localhost:6379/0"

    # Celery
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set
    # Periodic fan-out of sync_all_accounts; 0 disables the beat entry
    sync_schedule_minutes: int = 15
    # run_sync re-queues retryable failures (local limiter timeout, 429, network) with a fresh job
    sync_task_max_retries: int = 3
    sync_retry_base_delay_s: int = 30
    # Upstream 429s back off from a larger base than local limiter timeouts
    sync_rate_limit_retry_base_delay_s: int = 120
    sync_retry_max_delay_s: int = 900

    # A held lock with no progress write for this long is treated as abandoned
    sync_lock_lease_s: int = 1800

    # Optional static API key; when empty the API is open (local dev)
    api_key_header: str = "X-API-Key"
    api_key: str = ""

    log_level: str = "INFO"

    # Pipedream Connect (proxies every upstream Google API call)
    pipedream_api_base: str = "https://api.pipedream.com"
    pipedream_project_id: str = ""
    pipedream_client_id: str = ""
    pipedream_client_secret: str = ""
    pipedream_environment: str = "development"  # development | production

    # Token bucket shared per provider key (Google defaults: burst 12, 3/s steady)
    rate_limit_capacity: int = 12
    rate_limit_refill_per_second: float = 3.0
    # Max seconds a single call site waits for tokens before RateLimitTimeout
    rate_limit_wait_timeout_s: Optional[float] = 30.0

    # Fetch client retries (5xx / network only)
    fetch_max_retries: int = 2
    fetch_base_delay_ms: int = 500
    fetch_max_delay_ms: int = 8000
    fetch_timeout_s: float = 60.0

    # Gmail
    gmail_full_sync_days_back: int = 30
    gmail_threads_page_size: int = 50
    gmail_history_max_results: int = 100
    # Thread bodies fetched concurrently per batch
    gmail_fetch_batch_size: int = 10

    # Calendar window around "now"
    calendar_days_back: int = 30
    calendar_days_forward: int = 30
    calendar_events_page_size: int = 100

    # Contacts
    contacts_page_size: int = 100
    # Most recent stored emails scanned when deriving contacts (interaction counts scan all)
    contacts_email_scan_limit: int = 1000

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
