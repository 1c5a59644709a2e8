# backend/booking_core/config.py

from pathlib import Path
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    database_url: str = "sqlite:///./data/booking_core.db"
    redis_url: str = "redis://localhost:6379/0"

    log_level: str = "INFO"

    # Search
    slot_step_minutes: int | None = None  # None = service duration
    horizon_days: int = 60

    # Commit path
    max_staleness_seconds: int = 30
    commit_timeout_seconds: float = 5.0
    commit_max_retries: int = 3
    commit_retry_backoff_seconds: float = 0.05

    # Advisory slot tokens
    lock_ttl_ms: int = 5000
    lock_wait_ms: int = 200
    lock_bucket_minutes: int = 60

    # Projection cache / event bus
    projection_ttl_seconds: int = 300
    outbox_poll_interval: float = 1.0
    outbox_batch_size: int = 200
    consumer_max_retries: int = 3
    completion_grace_minutes: int = 15
    completion_check_interval: float = 60.0
    run_background_tasks: bool = True

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        extra="ignore",
    )

    @property
    def resolved_database_url(self) -> str:
        url = self.database_url
        if url.startswith("sqlite:///./"):
            relative_path = url.replace("sqlite:///./", "")
            absolute_path = BASE_DIR / relative_path
            absolute_path.parent.mkdir(parents=True, exist_ok=True)
            return f"sqlite:///{absolute_path}"
        return url


settings = Settings()
