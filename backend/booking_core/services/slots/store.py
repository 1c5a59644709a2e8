# backend/booking_core/services/slots/store.py
"""
Interval Store: the authoritative per-resource timeline.

free = (available windows ∩ operating hours)
       − (unavailable ∪ override windows)
       − (buffered intervals of blocking reservations)

Reads only; reservations are written exclusively by the booking coordinator.
"""

from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache

import pytz
from sqlalchemy.orm import Session

from ...models import AvailabilityWindows, Locations, Reservations, ReservationResources
from .catalog import PROVIDER, ResourceRef
from .intervals import BusyInterval, Interval, intersect, merge, saturated, subtract
from .schedule import expand_window, operating_hours
from .timezones import get_timezone

# Statuses whose buffered interval blocks a resource.
BLOCKING_STATUSES = ("confirmed", "in_progress", "completed")

AVAILABLE = "available"
UNAVAILABLE = "unavailable"
OVERRIDE = "override"


@dataclass(frozen=True)
class ProjectionMember:
    """One reservation as the busy projection records it."""
    reservation_id: int
    version: int
    active: bool
    start: datetime
    end: datetime
    units: int


@dataclass(frozen=True)
class ContextReservation:
    """Existing reservation handed to policy rules."""
    id: int
    service_id: int
    primary_resource_id: int
    start: datetime
    end: datetime
    status: str


class IntervalStore:
    """Interval queries against the store for one session."""

    def __init__(self, db: Session):
        self.db = db
        self._locations: dict[int, Locations] = {}

    # ── Location context ─────────────────────────────────────────────────

    def _location(self, location_id: int) -> Locations:
        if location_id not in self._locations:
            self._locations[location_id] = self.db.get(Locations, location_id)
        return self._locations[location_id]

    def timezone_for(self, resource: ResourceRef) -> pytz.BaseTzInfo:
        location = self._location(resource.location_id)
        return _cached_timezone(location.timezone if location else None)

    # ── Windows ──────────────────────────────────────────────────────────

    def working_windows(self, resource: ResourceRef, bounds: Interval) -> list[Interval]:
        """Catalog-derived working time, before reservations are removed."""
        location = self._location(resource.location_id)
        tz = self.timezone_for(resource)

        rows = (
            self.db.query(AvailabilityWindows)
            .filter(
                AvailabilityWindows.resource_id == resource.id,
                AvailabilityWindows.tenant_id == resource.tenant_id,
                AvailabilityWindows.date_start < bounds.end,
            )
            .all()
        )

        available: list[Interval] = []
        blocked: list[Interval] = []
        declares_availability = False
        for row in rows:
            occurrences = expand_window(
                row.date_start, row.date_end, row.recurrence, row.recurrence_until, tz, bounds,
            )
            if row.kind == AVAILABLE:
                declares_availability = True
                available.extend(occurrences)
            elif row.kind in (UNAVAILABLE, OVERRIDE):
                blocked.extend(occurrences)

        # Rooms and equipment without declared windows follow operating hours.
        if not declares_availability and resource.kind != PROVIDER:
            available = [bounds]

        windows = intersect(available, [bounds])
        hours = operating_hours(location.work_schedule if location else None, tz, bounds)
        if hours is not None:
            windows = intersect(windows, hours)
        return subtract(windows, blocked)

    # ── Reservations ─────────────────────────────────────────────────────

    def busy_intervals(
        self,
        resource_id: int,
        bounds: Interval,
    ) -> list[BusyInterval]:
        """Buffered intervals of blocking reservations overlapping bounds."""
        query = (
            self.db.query(
                ReservationResources.conflict_start,
                ReservationResources.conflict_end,
                ReservationResources.units,
            )
            .join(Reservations, Reservations.id == ReservationResources.reservation_id)
            .filter(
                ReservationResources.resource_id == resource_id,
                Reservations.status.in_(BLOCKING_STATUSES),
                ReservationResources.conflict_start < bounds.end,
                ReservationResources.conflict_end > bounds.start,
            )
        )
        return sorted(
            BusyInterval(start, end, units or 1)
            for start, end, units in query.all()
        )

    def free_intervals(
        self,
        resource: ResourceRef,
        bounds: Interval,
        units: int = 1,
        busy: list[BusyInterval] | None = None,
    ) -> list[Interval]:
        """
        Ordered, disjoint, merged free intervals for `units` of the resource.

        `busy` lets a caller supply busy intervals from the projection cache;
        when omitted they are read from the store.
        """
        if busy is None:
            busy = self.busy_intervals(resource.id, bounds)
        windows = self.working_windows(resource, bounds)
        return merge(subtract(windows, saturated(busy, resource.capacity, units)))

    def context_reservations(self, resource_id: int, bounds: Interval) -> list[ContextReservation]:
        """Blocking reservations whose primary resource is `resource_id`."""
        rows = (
            self.db.query(Reservations)
            .filter(
                Reservations.primary_resource_id == resource_id,
                Reservations.status.in_(BLOCKING_STATUSES),
                Reservations.conflict_start < bounds.end,
                Reservations.conflict_end > bounds.start,
            )
            .order_by(Reservations.date_start, Reservations.id)
            .all()
        )
        return [
            ContextReservation(
                id=r.id,
                service_id=r.service_id,
                primary_resource_id=r.primary_resource_id,
                start=r.date_start,
                end=r.date_end,
                status=r.status,
            )
            for r in rows
        ]

    def projection_members(self, resource_id: int, bounds: Interval) -> list[ProjectionMember]:
        """Every reservation bound to the resource in bounds, any status."""
        rows = (
            self.db.query(ReservationResources, Reservations)
            .join(Reservations, Reservations.id == ReservationResources.reservation_id)
            .filter(
                ReservationResources.resource_id == resource_id,
                ReservationResources.conflict_start < bounds.end,
                ReservationResources.conflict_end > bounds.start,
            )
            .order_by(Reservations.id)
            .all()
        )
        return [
            ProjectionMember(
                reservation_id=reservation.id,
                version=reservation.version,
                active=reservation.status in BLOCKING_STATUSES,
                start=binding.conflict_start,
                end=binding.conflict_end,
                units=binding.units or 1,
            )
            for binding, reservation in rows
        ]


@lru_cache(maxsize=256)
def _cached_timezone(tz_name: str | None) -> pytz.BaseTzInfo:
    return get_timezone(tz_name)
