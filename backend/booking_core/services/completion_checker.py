"""
Reservation completion checker.

Periodically completes reservations whose end (plus a grace period) has
passed while they are still confirmed or in progress. Transitions go through
the booking coordinator, so each one bumps the version and emits
reservation.completed.

Runs as an asyncio task in the app lifespan.
Uses synchronous DB access (via asyncio.to_thread).
"""

import asyncio
import logging
from datetime import datetime, timedelta

from ..errors import DomainException
from ..models import Reservations
from .booking import COMPLETED, CONFIRMED, IN_PROGRESS, BookingCoordinator

logger = logging.getLogger(__name__)

CHECK_INTERVAL = 60  # seconds between checks
BATCH_LIMIT = 500


def complete_due_reservations(
    coordinator: BookingCoordinator,
    grace_minutes: int,
    now: datetime | None = None,
) -> int:
    """
    Complete every reservation that ended more than grace_minutes ago.

    Returns:
        Number of reservations completed.
    """
    now = now or coordinator.clock()
    cutoff = now - timedelta(minutes=grace_minutes)

    db = coordinator.session_factory()
    try:
        due = (
            db.query(Reservations.tenant_id, Reservations.id)
            .filter(
                Reservations.status.in_([CONFIRMED, IN_PROGRESS]),
                Reservations.date_end <= cutoff,
            )
            .order_by(Reservations.date_end, Reservations.id)
            .limit(BATCH_LIMIT)
            .all()
        )
    finally:
        db.close()

    completed = 0
    for tenant_id, reservation_id in due:
        try:
            coordinator.complete(tenant_id, reservation_id)
            completed += 1
        except DomainException as e:
            # Typically a concurrent cancel or no-show got there first.
            logger.info(f"Reservation {reservation_id} not completed: {e.code}")

    if completed:
        logger.info(f"Completion checker moved {completed} reservation(s) to {COMPLETED}")
    return completed


async def completion_checker_loop(
    coordinator: BookingCoordinator,
    grace_minutes: int,
    interval: float = CHECK_INTERVAL,
) -> None:
    """Periodic loop around complete_due_reservations."""
    logger.info("completion_checker_loop started")

    try:
        while True:
            try:
                await asyncio.to_thread(complete_due_reservations, coordinator, grace_minutes)
            except asyncio.CancelledError:
                logger.info("completion_checker_loop cancelled")
                raise
            except Exception:
                logger.exception("completion_checker_loop error")

            await asyncio.sleep(interval)
    except asyncio.CancelledError:
        pass
