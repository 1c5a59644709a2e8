"""
Redis event consumer loops for the busy projection.

- projection_consumer_loop: applies lifecycle events and rebuild commands
  from events:reservations
- retry_consumer_loop: moves retried events back onto the main queue

A failing event is retried up to MAX_RETRIES times, then parked on the
dead-letter queue for inspection; the stream keeps flowing.

Started as asyncio tasks in the app lifespan.
"""

import asyncio
import json
import logging
from datetime import date

import redis.asyncio as aioredis
from redis import Redis

from .events import PROJECTION_REBUILD, RESERVATIONS_QUEUE
from .slots.invalidator import ProjectionCache

logger = logging.getLogger(__name__)

MAX_RETRIES = 3
RETRY_QUEUE = f"{RESERVATIONS_QUEUE}:retry"
DEAD_QUEUE = f"{RESERVATIONS_QUEUE}:dead"
RETRY_DELAY = 5.0  # seconds between requeued events


def process_event(cache: ProjectionCache, data: dict) -> None:
    """Dispatch one decoded message."""
    event_type = data.get("type", "")

    if event_type == PROJECTION_REBUILD:
        tenant_id = int(data["tenant_id"])
        resource_id = int(data["resource_id"])
        for day in data.get("days", []):
            cache.rebuild(tenant_id, resource_id, date.fromisoformat(day))
        return

    if event_type.startswith("reservation."):
        changed = cache.apply_event(data)
        logger.debug(
            f"Applied {event_type} reservation={data.get('reservation_id')} "
            f"v{data.get('version')} → {changed} day(s)"
        )
        return

    logger.info(f"Ignoring event of unknown type: {event_type!r}")


def process_event_safe(
    r: Redis,
    cache: ProjectionCache,
    raw: str,
    retry_queue: str = RETRY_QUEUE,
    dead_queue: str = DEAD_QUEUE,
    max_retries: int = MAX_RETRIES,
) -> bool:
    """
    Decode and apply one raw message without raising.

    A failed message goes to the retry queue with `_attempt` bumped until it
    has been tried max_retries times, then to the dead-letter queue.
    Returns True when the message was applied.
    """
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        logger.error(f"Invalid JSON in event queue: {raw[:200]}")
        r.rpush(dead_queue, raw)
        return False

    attempt = data.get("_attempt", 1)

    try:
        process_event(cache, data)
        return True
    except Exception:
        logger.exception(
            f"Failed to process event type={data.get('type')} "
            f"(attempt {attempt}/{max_retries})"
        )

        if attempt < max_retries:
            data["_attempt"] = attempt + 1
            r.rpush(retry_queue, json.dumps(data))
            logger.info(f"Event re-queued to {retry_queue} (attempt {attempt + 1})")
        else:
            r.rpush(dead_queue, json.dumps(data))
            logger.warning(
                f"Event parked on dead-letter queue {dead_queue}: "
                f"type={data.get('type')} reservation={data.get('reservation_id')}"
            )
        return False


async def projection_consumer_loop(
    redis_url: str,
    sync_redis: Redis,
    cache: ProjectionCache,
    max_retries: int = MAX_RETRIES,
) -> None:
    """
    Consume events from events:reservations.

    Uses BLPOP with 5s timeout to avoid busy-waiting; producers RPUSH, so
    events are applied in publish order.
    """
    r = aioredis.from_url(redis_url, decode_responses=True)
    logger.info("projection_consumer_loop started")

    try:
        while True:
            try:
                result = await r.blpop(RESERVATIONS_QUEUE, timeout=5)
                if result is None:
                    continue

                _, raw = result
                await asyncio.to_thread(
                    process_event_safe, sync_redis, cache, raw, RETRY_QUEUE, DEAD_QUEUE, max_retries
                )

            except asyncio.CancelledError:
                logger.info("projection_consumer_loop cancelled")
                raise
            except Exception:
                logger.exception("projection_consumer_loop error, retrying in 2s")
                await asyncio.sleep(2)
    finally:
        await r.aclose()


async def retry_consumer_loop(redis_url: str, delay: float = RETRY_DELAY) -> None:
    """
    Move retried events back onto the main queue, one every `delay` seconds.

    BLMOVE keeps each event in exactly one list while it is moved.
    """
    r = aioredis.from_url(redis_url, decode_responses=True)
    logger.info(f"retry_consumer_loop started: {RETRY_QUEUE} -> {RESERVATIONS_QUEUE}")

    try:
        while True:
            try:
                moved = await r.blmove(RETRY_QUEUE, RESERVATIONS_QUEUE, 5, "LEFT", "RIGHT")
                if moved is not None:
                    logger.info(f"Requeued event for retry: {moved[:120]}")
                    await asyncio.sleep(delay)
            except asyncio.CancelledError:
                logger.info("retry_consumer_loop stopped")
                raise
            except Exception:
                logger.exception(f"retry_consumer_loop failed, pausing {delay}s")
                await asyncio.sleep(delay)
    finally:
        await r.aclose()
