# backend/booking_core/services/slots/availability.py
"""
Slot search: ranked candidate slots for a service request.

For each eligible primary resource:
- free intervals (busy from the projection cache, else the Interval Store)
- fixed-step buffered windows that fit inside them
- secondary feasibility (rooms, pooled equipment) for every window
- policy rules, first failure discards the candidate

Ranking: preference score desc, start asc, primary resource id asc.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Callable

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from ...errors import ValidationException
from .catalog import (
    EQUIPMENT,
    ROOM,
    ResourceRef,
    ServiceSpec,
    get_eligible_primaries,
    get_location,
    get_resource,
    get_secondary_options,
    get_service,
    get_service_rules,
)
from .config import BookingConfig, get_booking_config
from .intervals import BusyInterval, Interval, slice_windows
from .redis_store import BusyProjectionStore
from .rules import RuleContext, evaluate, order_rules
from .store import IntervalStore
from .timezones import get_timezone, local_to_utc, utc_to_local, utcnow

logger = logging.getLogger(__name__)

PREFERRED_RESOURCE_BONUS = 1.0
TIME_OF_DAY_BONUS = 1.0

TIME_OF_DAY_RANGES = {
    "morning": (time(0, 0), time(12, 0)),
    "afternoon": (time(12, 0), time(17, 0)),
    "evening": (time(17, 0), time.max),
}

RebuildRequester = Callable[[int, int, list], None]


@dataclass(frozen=True)
class SearchPreferences:
    preferred_resource_ids: tuple[int, ...] = ()
    time_of_day: str | None = None


@dataclass(frozen=True)
class SearchQuery:
    tenant_id: int
    service_id: int
    location_id: int
    range_start: datetime  # local wall-clock
    range_end: datetime
    resource_ids: tuple[int, ...] | None = None
    preferences: SearchPreferences = field(default_factory=SearchPreferences)


@dataclass(frozen=True)
class SlotCandidate:
    start: datetime  # UTC display interval
    end: datetime
    local_start: datetime
    local_end: datetime
    primary_resource_id: int
    room_ids: tuple[int, ...] = ()
    equipment_ids: tuple[int, ...] = ()
    score: float = 0.0

    @property
    def sort_key(self) -> tuple:
        return (-self.score, self.start, self.primary_resource_id)


def preference_score(
    resource: ResourceRef,
    local_start: datetime,
    preferences: SearchPreferences,
) -> float:
    score = resource.ranking_weight
    if resource.id in preferences.preferred_resource_ids:
        score += PREFERRED_RESOURCE_BONUS
    window = TIME_OF_DAY_RANGES.get(preferences.time_of_day or "")
    if window and window[0] <= local_start.time() < window[1]:
        score += TIME_OF_DAY_BONUS
    return score


class SlotSearch:
    """Slot search over one session's view of the store."""

    def __init__(
        self,
        db: Session,
        projection: BusyProjectionStore | None = None,
        config: BookingConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
        request_rebuild: RebuildRequester | None = None,
    ):
        self.db = db
        self.store = IntervalStore(db)
        self.projection = projection
        self.config = config or get_booking_config()
        self.clock = clock
        self.request_rebuild = request_rebuild

    # ── Busy source ──────────────────────────────────────────────────────

    def busy_for(self, resource: ResourceRef, bounds: Interval, now: datetime) -> list[BusyInterval]:
        """Projection fast path, Interval Store on miss, staleness or Redis failure."""
        if self.projection is not None:
            try:
                read = self.projection.read_busy(resource.tenant_id, resource.id, bounds, now)
            except RedisError as e:
                logger.warning(f"Projection read failed, using store: {e}")
            else:
                if read.busy is not None:
                    return read.busy
                if self.request_rebuild is not None:
                    self.request_rebuild(resource.tenant_id, resource.id, read.missing_days)
        return self.store.busy_intervals(resource.id, bounds)

    def free_for(
        self,
        resource: ResourceRef,
        bounds: Interval,
        now: datetime,
        units: int = 1,
    ) -> list[Interval]:
        return self.store.free_intervals(
            resource, bounds, units=units, busy=self.busy_for(resource, bounds, now),
        )

    # ── Search ───────────────────────────────────────────────────────────

    def search(self, query: SearchQuery) -> list[SlotCandidate]:
        now = self.clock()

        service = get_service(self.db, query.tenant_id, query.service_id)
        location = get_location(self.db, query.tenant_id, query.location_id)
        tz = get_timezone(location.timezone)

        # Step 1: local range → UTC (strict DST handling)
        range_utc = Interval(
            local_to_utc(query.range_start, tz),
            local_to_utc(query.range_end, tz),
        )
        if range_utc.end <= range_utc.start:
            raise ValidationException(
                "Search range end must be after its start", code="invalid_range",
            )
        if range_utc.duration > timedelta(days=self.config.horizon_days):
            raise ValidationException(
                f"Search range cannot exceed {self.config.horizon_days} days",
                code="range_too_long",
                details={"horizon_days": self.config.horizon_days},
            )

        # Step 2: buffered span
        before = timedelta(minutes=service.buffer_before_min)
        after = timedelta(minutes=service.buffer_after_min)
        span = timedelta(minutes=service.total_span_min)
        step = self.config.step_for(service.duration_min)
        bounds = Interval(range_utc.start - before, range_utc.end + after)

        primaries = get_eligible_primaries(self.db, query.tenant_id, service.id, location.id)
        if query.resource_ids is not None:
            primaries = self._apply_filter(primaries, query.resource_ids, query.tenant_id)
        if not primaries:
            return []

        rooms, equipment = self._secondary_free(service, location.id, query.tenant_id, bounds, now)
        if rooms is not None and not rooms:
            return []
        if equipment is not None and not equipment:
            return []

        rules = order_rules(get_service_rules(self.db, query.tenant_id, service.id), service)
        context_bounds = Interval(bounds.start - timedelta(days=1), bounds.end + timedelta(days=1))

        def local_day_of(dt: datetime):
            return utc_to_local(dt, tz).date()

        candidates: list[SlotCandidate] = []
        for resource in primaries:
            # Step 3: free intervals of the primary resource
            free = self.free_for(resource, bounds, now)
            if not free:
                continue
            reservations = tuple(self.store.context_reservations(resource.id, context_bounds))

            for interval in free:
                # Step 4: fixed-step buffered windows
                for window in slice_windows(interval, span, step):
                    slot = Interval(window.start + before, window.end - after)
                    if slot.start < range_utc.start or slot.end > range_utc.end:
                        continue

                    # Steps 5-6: secondary feasibility
                    room_ids = _feasible(rooms, window)
                    if rooms is not None and not room_ids:
                        continue
                    equipment_ids = _feasible(equipment, window)
                    if equipment is not None and not equipment_ids:
                        continue

                    # Step 7: policy rules
                    local_start = utc_to_local(slot.start, tz)
                    verdict = evaluate(rules, RuleContext(
                        service=service,
                        resource=resource,
                        slot=slot,
                        local_start=local_start,
                        now=now,
                        reservations=reservations,
                        local_day_of=local_day_of,
                    ))
                    if not verdict.passed:
                        continue

                    candidates.append(SlotCandidate(
                        start=slot.start,
                        end=slot.end,
                        local_start=local_start,
                        local_end=utc_to_local(slot.end, tz),
                        primary_resource_id=resource.id,
                        room_ids=room_ids,
                        equipment_ids=equipment_ids,
                        score=preference_score(resource, local_start, query.preferences),
                    ))

        # Step 8: deterministic ranking
        candidates.sort(key=lambda c: c.sort_key)
        return candidates

    # ── Helpers ──────────────────────────────────────────────────────────

    def _apply_filter(
        self,
        primaries: list[ResourceRef],
        resource_ids: tuple[int, ...],
        tenant_id: int,
    ) -> list[ResourceRef]:
        eligible = {r.id: r for r in primaries}
        selected = []
        for resource_id in sorted(set(resource_ids)):
            if resource_id not in eligible:
                # Unknown resources are a not-found; known but ineligible ones just drop out.
                get_resource(self.db, tenant_id, resource_id)
                continue
            selected.append(eligible[resource_id])
        return selected

    def _secondary_free(
        self,
        service: ServiceSpec,
        location_id: int,
        tenant_id: int,
        bounds: Interval,
        now: datetime,
    ) -> tuple[dict[int, list[Interval]] | None, dict[int, list[Interval]] | None]:
        """Free intervals per secondary option; None when not required."""
        rooms = None
        if service.requires_room:
            rooms = {
                room.id: self.free_for(room, bounds, now)
                for room in get_secondary_options(self.db, tenant_id, location_id, ROOM, service.room_type)
            }

        equipment = None
        if service.equipment_type:
            equipment = {
                item.id: self.free_for(item, bounds, now, units=service.equipment_units)
                for item in get_secondary_options(
                    self.db, tenant_id, location_id, EQUIPMENT, service.equipment_type,
                )
                if item.capacity >= service.equipment_units
            }
        return rooms, equipment


def _feasible(options: dict[int, list[Interval]] | None, window: Interval) -> tuple[int, ...]:
    if options is None:
        return ()
    return tuple(
        resource_id
        for resource_id, free in options.items()
        if any(f.contains(window) for f in free)
    )
