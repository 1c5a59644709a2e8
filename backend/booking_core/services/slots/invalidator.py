# backend/booking_core/services/slots/invalidator.py
"""
Busy projection maintenance.

Triggers:
✓ Reservation lifecycle event consumed → apply member to cached days
✓ projection.rebuild command consumed → recompute day from the Interval Store
✓ Read-path miss / operator repair → request_rebuild() enqueues the command

Only the event-consuming path calls apply_event() and rebuild(); request
handlers go through request_rebuild().
"""

import logging
from datetime import date, datetime

from redis import Redis
from sqlalchemy.orm import sessionmaker

from ..events import PROJECTION_REBUILD, emit_command
from .intervals import Interval
from .redis_store import BusyProjectionStore, day_bounds, days_covering
from .store import BLOCKING_STATUSES, IntervalStore, ProjectionMember
from .timezones import utcnow

logger = logging.getLogger(__name__)


class ProjectionCache:
    """Applies events and rebuilds for the busy projection."""

    def __init__(self, store: BusyProjectionStore, session_factory: sessionmaker):
        self.store = store
        self.session_factory = session_factory

    def rebuild(self, tenant_id: int, resource_id: int, day: date, now: datetime | None = None) -> int:
        """
        Discard the cached day and recompute it from the Interval Store.

        Returns the new generation.
        """
        db = self.session_factory()
        try:
            members = IntervalStore(db).projection_members(resource_id, day_bounds(day))
        finally:
            db.close()

        generation = self.store.store_day(tenant_id, resource_id, day, members, now or utcnow())
        logger.info(
            f"Projection rebuilt: tenant={tenant_id} resource={resource_id} "
            f"day={day.isoformat()} members={len(members)} generation={generation}"
        )
        return generation

    def apply_event(self, event: dict) -> int:
        """
        Apply a reservation lifecycle event.

        Idempotent and order-tolerant: a version not newer than the one
        recorded for the reservation is ignored.

        Returns:
            Number of cached days changed.
        """
        tenant_id = int(event["tenant_id"])
        reservation_id = int(event["reservation_id"])
        version = int(event["version"])
        active = event["status"] in BLOCKING_STATUSES

        changed = 0
        for binding in event.get("bindings", []):
            member = ProjectionMember(
                reservation_id=reservation_id,
                version=version,
                active=active,
                start=datetime.fromisoformat(binding["conflict_start"]),
                end=datetime.fromisoformat(binding["conflict_end"]),
                units=int(binding.get("units", 1)),
            )
            resource_id = int(binding["resource_id"])
            for day in days_covering(Interval(member.start, member.end)):
                if self.store.apply_member(tenant_id, resource_id, day, member):
                    changed += 1
        return changed


def request_rebuild(
    redis: Redis,
    tenant_id: int,
    resource_id: int,
    days: list[date],
) -> None:
    """Ask the consumer to rebuild cached days for a resource."""
    if not days:
        return
    emit_command(redis, PROJECTION_REBUILD, {
        "tenant_id": tenant_id,
        "resource_id": resource_id,
        "days": [d.isoformat() for d in days],
    })
