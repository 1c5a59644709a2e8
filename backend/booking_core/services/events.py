"""
backend/booking_core/services/events.py

Reservation lifecycle events: transactional outbox + relay to Redis queues.

The outbox row is written in the same unit of work as the reservation change
it describes. A separate relay pushes pending rows to the Redis queues at
least once; consumers deduplicate by (reservation_id, version).

Queues:
- events:reservations: projection cache consumer
- events:p2p: external notifiers (instant delivery)
"""

import asyncio
import json
import logging
import time
from datetime import datetime, timedelta

from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from ..database import make_session_factory, unit_of_work
from ..models import EventOutbox, Reservations
from .slots.timezones import utcnow

logger = logging.getLogger(__name__)

RESERVATIONS_QUEUE = "events:reservations"
NOTIFY_QUEUE = "events:p2p"
PUBLISH_QUEUES = (RESERVATIONS_QUEUE, NOTIFY_QUEUE)

PENDING = "pending"
SENT = "sent"

MAX_BACKOFF_SECONDS = 300

RESERVATION_CREATED = "reservation.created"
RESERVATION_CANCELLED = "reservation.cancelled"
RESERVATION_RESCHEDULED = "reservation.rescheduled"
RESERVATION_STARTED = "reservation.started"
RESERVATION_COMPLETED = "reservation.completed"
RESERVATION_NO_SHOW = "reservation.no_show"
PROJECTION_REBUILD = "projection.rebuild"


def _iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def build_payload(reservation: Reservations, event_type: str, extra: dict | None = None) -> dict:
    return {
        "type": event_type,
        "tenant_id": reservation.tenant_id,
        "reservation_id": reservation.id,
        "version": reservation.version,
        "status": reservation.status,
        "service_id": reservation.service_id,
        "location_id": reservation.location_id,
        "primary_resource_id": reservation.primary_resource_id,
        "date_start": _iso(reservation.date_start),
        "date_end": _iso(reservation.date_end),
        "bindings": [
            {
                "resource_id": b.resource_id,
                "role": b.role,
                "units": b.units,
                "conflict_start": _iso(b.conflict_start),
                "conflict_end": _iso(b.conflict_end),
            }
            for b in reservation.bindings
        ],
        **(extra or {}),
    }


def enqueue_event(
    db: Session,
    reservation: Reservations,
    event_type: str,
    extra: dict | None = None,
) -> EventOutbox:
    """
    Add an outbox row to the caller's unit of work.

    The reservation must be flushed (it needs an id and its bindings).
    """
    now = utcnow()
    row = EventOutbox(
        tenant_id=reservation.tenant_id,
        event_type=event_type,
        reservation_id=reservation.id,
        version=reservation.version,
        payload=json.dumps(build_payload(reservation, event_type, extra)),
        status=PENDING,
        attempt_count=0,
        next_attempt_at=now,
        created_at=now,
        updated_at=now,
    )
    db.add(row)
    return row


def emit_command(redis: Redis, command_type: str, payload: dict) -> None:
    """
    Push a command for the projection consumer (e.g. a rebuild request).

    Commands are advisory: losing one only delays cache warm-up.
    """
    command = {
        "type": command_type,
        **payload,
        "ts": int(time.time()),
    }
    try:
        redis.rpush(RESERVATIONS_QUEUE, json.dumps(command))
        logger.info(f"Command emitted: {command_type} → {RESERVATIONS_QUEUE}")
    except RedisError as e:
        logger.warning(f"Failed to emit command {command_type}: {e}")


# ── Relay ────────────────────────────────────────────────────────────────


def relay_pending(
    engine: Engine,
    redis: Redis,
    limit: int = 200,
    now: datetime | None = None,
    queues: tuple[str, ...] = PUBLISH_QUEUES,
) -> int:
    """
    Publish due outbox rows once.

    Rows are pushed outside the write transaction and marked afterwards, so
    a crash in between republishes them (at-least-once).

    Returns:
        Number of events published.
    """
    now = now or utcnow()

    db = make_session_factory(engine)()
    try:
        due = (
            db.query(EventOutbox.id, EventOutbox.payload, EventOutbox.attempt_count)
            .filter(
                EventOutbox.status == PENDING,
                EventOutbox.next_attempt_at <= now,
            )
            .order_by(EventOutbox.id)
            .limit(limit)
            .all()
        )
    finally:
        db.close()

    if not due:
        return 0

    sent: list[int] = []
    failed: dict[int, tuple[int, str]] = {}
    for event_id, payload, attempts in due:
        try:
            data = json.loads(payload)
            data["event_id"] = event_id
            message = json.dumps(data)
            for queue in queues:
                redis.rpush(queue, message)
            sent.append(event_id)
        except RedisError as e:
            failed[event_id] = (attempts + 1, str(e))
            # Bus is down; later rows would fail the same way.
            break

    with unit_of_work(engine) as uow:
        if sent:
            (
                uow.query(EventOutbox)
                .filter(EventOutbox.id.in_(sent))
                .update(
                    {
                        EventOutbox.status: SENT,
                        EventOutbox.attempt_count: EventOutbox.attempt_count + 1,
                        EventOutbox.last_error: None,
                        EventOutbox.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
        for event_id, (attempts, error) in failed.items():
            backoff = min(2 ** attempts, MAX_BACKOFF_SECONDS)
            (
                uow.query(EventOutbox)
                .filter(EventOutbox.id == event_id)
                .update(
                    {
                        EventOutbox.attempt_count: attempts,
                        EventOutbox.last_error: error[:1000],
                        EventOutbox.next_attempt_at: now + timedelta(seconds=backoff),
                        EventOutbox.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )

    if sent:
        logger.info(f"Outbox relay published {len(sent)} event(s)")
    for event_id, (attempts, error) in failed.items():
        logger.error(f"Outbox event {event_id} publish failed (attempt {attempts}): {error}")

    return len(sent)


async def outbox_relay_loop(engine: Engine, redis: Redis, interval: float = 1.0, batch_size: int = 200) -> None:
    """
    Periodic loop that pushes pending outbox rows to the event queues.

    Runs as an asyncio task in the app lifespan; DB and Redis work happens in
    a worker thread.
    """
    logger.info("outbox_relay_loop started")

    try:
        while True:
            try:
                published = await asyncio.to_thread(relay_pending, engine, redis, batch_size)
                if published >= batch_size:
                    continue
            except asyncio.CancelledError:
                logger.info("outbox_relay_loop cancelled")
                raise
            except Exception:
                logger.exception("outbox_relay_loop error")

            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        pass
