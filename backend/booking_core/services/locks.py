# backend/booking_core/services/locks.py
"""
Advisory slot tokens.

Key format: slot_token:{tenant_id}:{resource_id}:{bucket_start_ts}
Value: random token owned by one commit attempt, expires after lock_ttl_ms.

Tokens only cut down on commits that would abort anyway. They never decide
correctness: the atomic unit of work in the booking coordinator does. When
Redis is down or a token stays held past lock_wait_ms, the commit proceeds
without it.
"""

import logging
import time
from datetime import timezone
from uuid import uuid4

from redis import Redis
from redis.exceptions import RedisError

from .slots.config import BookingConfig, get_booking_config
from .slots.intervals import Interval

logger = logging.getLogger(__name__)

SLOT_TOKEN_PREFIX = "slot_token"
POLL_INTERVAL = 0.02  # seconds


def bucket_starts(interval: Interval, bucket_minutes: int) -> list[int]:
    """Unix timestamps of every bucket touched by the interval."""
    width = bucket_minutes * 60
    start_ts = int(interval.start.replace(tzinfo=timezone.utc).timestamp())
    end_ts = int(interval.end.replace(tzinfo=timezone.utc).timestamp())
    first = start_ts - (start_ts % width)
    return list(range(first, end_ts, width)) or [first]


class SlotTokens:
    """Tokens held by one commit attempt."""

    def __init__(self, redis: Redis | None, config: BookingConfig | None = None):
        self.redis = redis
        self.config = config or get_booking_config()
        self.token = uuid4().hex
        self.held: list[str] = []

    def _keys(self, tenant_id: int, resource_ids: list[int], interval: Interval) -> list[str]:
        buckets = bucket_starts(interval, self.config.lock_bucket_minutes)
        return [
            f"{SLOT_TOKEN_PREFIX}:{tenant_id}:{resource_id}:{bucket}"
            for resource_id in sorted(set(resource_ids))
            for bucket in buckets
        ]

    def acquire(self, tenant_id: int, resource_ids: list[int], interval: Interval) -> bool:
        """
        Take every token for the resources and interval.

        Returns False when some token could not be taken in time; the
        tokens that were taken stay held until release().
        """
        if self.redis is None or not resource_ids:
            return False

        deadline = time.monotonic() + self.config.lock_wait_ms / 1000
        try:
            for key in self._keys(tenant_id, resource_ids, interval):
                while not self.redis.set(key, self.token, nx=True, px=self.config.lock_ttl_ms):
                    if time.monotonic() >= deadline:
                        logger.info(f"Slot token busy, proceeding without it: {key}")
                        return False
                    time.sleep(POLL_INTERVAL)
                self.held.append(key)
        except RedisError as e:
            logger.warning(f"Slot tokens unavailable, proceeding without them: {e}")
            return False
        return True

    def release(self) -> None:
        """Delete the tokens this attempt still owns."""
        if self.redis is None:
            return
        for key in self.held:
            try:
                if self.redis.get(key) == self.token:
                    self.redis.delete(key)
            except RedisError as e:
                logger.warning(f"Failed to release slot token {key}: {e}")
        self.held = []

    def __enter__(self) -> "SlotTokens":
        return self

    def __exit__(self, *exc) -> None:
        self.release()
