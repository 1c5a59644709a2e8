# backend/booking_core/services/slots/config.py
"""
Booking configuration for slot search and the commit path.
"""

from dataclasses import dataclass
from datetime import timedelta
from functools import lru_cache

from ...config import settings


@dataclass(frozen=True)
class BookingConfig:
    """
    Configuration for the availability & booking core.

    Attributes:
        slot_step_minutes: Candidate start granularity (None = service duration)
        horizon_days: Longest search range accepted
        max_staleness_seconds: Oldest availability snapshot a booking may rely on
        commit_timeout_seconds: Upper bound for one commit attempt
        commit_max_retries: Retries for transient store failures
        commit_retry_backoff_seconds: First retry delay (doubles per attempt)
        lock_ttl_ms: Lifetime of an advisory slot token
        lock_wait_ms: How long to wait for a held token before proceeding without it
        lock_bucket_minutes: Width of the time buckets tokens are taken on
        projection_ttl_seconds: Age after which a projection entry is a miss
    """
    slot_step_minutes: int | None = None
    horizon_days: int = 60
    max_staleness_seconds: int = 30
    commit_timeout_seconds: float = 5.0
    commit_max_retries: int = 3
    commit_retry_backoff_seconds: float = 0.05
    lock_ttl_ms: int = 5000
    lock_wait_ms: int = 200
    lock_bucket_minutes: int = 60
    projection_ttl_seconds: int = 300

    def __post_init__(self):
        """Validate configuration."""
        if self.slot_step_minutes is not None and self.slot_step_minutes <= 0:
            raise ValueError(f"slot_step_minutes must be positive, got {self.slot_step_minutes}")
        if self.horizon_days <= 0:
            raise ValueError(f"horizon_days must be positive, got {self.horizon_days}")
        if self.lock_bucket_minutes <= 0:
            raise ValueError(f"lock_bucket_minutes must be positive, got {self.lock_bucket_minutes}")
        if self.commit_max_retries < 0:
            raise ValueError(f"commit_max_retries must be >= 0, got {self.commit_max_retries}")

    def step_for(self, duration_min: int) -> timedelta:
        """Candidate step for a service of the given duration."""
        return timedelta(minutes=self.slot_step_minutes or duration_min)

    @property
    def max_staleness(self) -> timedelta:
        return timedelta(seconds=self.max_staleness_seconds)


@lru_cache
def get_booking_config() -> BookingConfig:
    """Booking configuration built from environment settings (singleton)."""
    return BookingConfig(
        slot_step_minutes=settings.slot_step_minutes,
        horizon_days=settings.horizon_days,
        max_staleness_seconds=settings.max_staleness_seconds,
        commit_timeout_seconds=settings.commit_timeout_seconds,
        commit_max_retries=settings.commit_max_retries,
        commit_retry_backoff_seconds=settings.commit_retry_backoff_seconds,
        lock_ttl_ms=settings.lock_ttl_ms,
        lock_wait_ms=settings.lock_wait_ms,
        lock_bucket_minutes=settings.lock_bucket_minutes,
        projection_ttl_seconds=settings.projection_ttl_seconds,
    )
