"""All settings, loaded from the environment and the .env file."""
from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # App
    app_url: str = "http://localhost:8000"
    database_url: str = "sqlite:///./channelsync.db"
    log_level: str = "INFO"
    log_file: str = "logs/channelsync.log"
    testing: bool = False
    secret_key: str = "change-me"

    # Worker pools (concurrent workers per logical queue)
    stock_concurrency: int = 2
    order_concurrency: int = 2
    push_target_concurrency: int = 8
    notification_concurrency: int = 4

    # Retry policy
    job_max_attempts: int = 3
    notification_max_attempts: int = 5
    backoff_base_seconds: float = 2.0
    backoff_jitter: float = 0.25

    # Worker timing
    job_timeout_seconds: float = 30
    stall_timeout_seconds: float = 120
    poll_interval_seconds: float = 1.0
    drain_timeout_seconds: float = 30

    # Job retention
    completed_retention_hours: int = 24
    failed_retention_days: int = 7

    # Order pulls
    order_pull_interval_min: int = 10
    order_pull_lookback_hours: int = 24
    order_pull_overlap_min: int = 5
    order_pull_max_pages: int = 10
    order_page_size: int = 50

    # Listing pulls and maintenance
    listing_pull_interval_min: int = 60
    stall_sweep_interval_sec: int = 60

    # Outbound channel calls
    channel_timeout_seconds: float = 20
    governor_acquire_timeout_seconds: float = 10

    # Event delivery (optional webhook for dashboard notifications)
    event_webhook_url: str = ""

    # Inbound API rate limiting (slowapi)
    rate_limit_enabled: bool = True
    rate_limit_default: str = "120/minute"
    rate_limit_trigger: str = "30/minute"
    cache_backend: str = "memory"
    redis_url: str = ""

    @property
    def is_production(self) -> bool:
        return "localhost" not in self.app_url and "127.0.0.1" not in self.app_url

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
