"""
backend/booking_core/services/booking.py

Booking coordinator: the only writer of reservations.

Commit protocol:
1. Pre-validation against the catalog (no locks)
2. Idempotency lookup on (tenant, idempotency_key)
3. Freshness check of the caller's availability snapshot
4. Advisory slot tokens for explicitly requested resources
5. One serializable unit of work: lock resource rows, re-check overlap and
   capacity for every binding, evaluate policy rules, insert the
   reservation and its outbox event
6. Release tokens whatever happened

Lifecycle transitions (cancel, start, complete, no-show, reschedule) run
through the same unit of work and bump the reservation version.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, TypeVar

from redis import Redis
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from ..database import make_session_factory, unit_of_work
from ..errors import (
    ConflictException,
    InvalidTransitionError,
    NotFoundException,
    RuleViolationError,
    StaleSnapshotError,
    TransientInfraError,
    ValidationException,
)
from ..models import Reservations, ReservationResources, Resources
from .events import (
    RESERVATION_CANCELLED,
    RESERVATION_COMPLETED,
    RESERVATION_CREATED,
    RESERVATION_NO_SHOW,
    RESERVATION_RESCHEDULED,
    RESERVATION_STARTED,
    enqueue_event,
)
from .locks import SlotTokens
from .slots.catalog import (
    EQUIPMENT,
    PROVIDER,
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
from .slots.config import BookingConfig, get_booking_config
from .slots.intervals import Interval, overlaps, saturated
from .slots.rules import RuleContext, evaluate, order_rules
from .slots.store import IntervalStore
from .slots.timezones import get_timezone, utc_to_local, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

CONFIRMED = "confirmed"
IN_PROGRESS = "in_progress"
COMPLETED = "completed"
CANCELLED = "cancelled"
NO_SHOW = "no_show"

ALLOWED_TRANSITIONS = {
    CONFIRMED: {CANCELLED, IN_PROGRESS, COMPLETED, NO_SHOW},
    IN_PROGRESS: {COMPLETED, NO_SHOW},
}

TRANSITION_EVENTS = {
    CANCELLED: RESERVATION_CANCELLED,
    IN_PROGRESS: RESERVATION_STARTED,
    COMPLETED: RESERVATION_COMPLETED,
    NO_SHOW: RESERVATION_NO_SHOW,
}

RESCHEDULED_REASON = "rescheduled"

ROLE_PRIMARY = "primary"
ROLE_ROOM = "room"
ROLE_EQUIPMENT = "equipment"


@dataclass(frozen=True)
class BookingRequest:
    tenant_id: int
    service_id: int
    location_id: int
    start: datetime  # UTC display interval
    end: datetime
    idempotency_key: str
    primary_resource_id: int | None = None  # None = auto
    room_id: int | None = None
    equipment_id: int | None = None
    fetched_at: datetime | None = None  # UTC, when the caller read availability
    principal: str | None = None

    @property
    def explicit_resource_ids(self) -> list[int]:
        return [
            rid for rid in (self.primary_resource_id, self.room_id, self.equipment_id)
            if rid is not None
        ]


@dataclass(frozen=True)
class BindingView:
    resource_id: int
    role: str
    units: int
    conflict_start: datetime
    conflict_end: datetime


@dataclass(frozen=True)
class ReservationView:
    id: int
    tenant_id: int
    service_id: int
    location_id: int
    primary_resource_id: int
    start: datetime
    end: datetime
    buffer_before_min: int
    buffer_after_min: int
    conflict_start: datetime
    conflict_end: datetime
    status: str
    version: int
    idempotency_key: str
    principal: str | None
    cancel_reason: str | None
    rescheduled_from_id: int | None
    created_at: datetime
    updated_at: datetime
    bindings: tuple[BindingView, ...] = ()

    @classmethod
    def from_row(cls, row: Reservations) -> "ReservationView":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            service_id=row.service_id,
            location_id=row.location_id,
            primary_resource_id=row.primary_resource_id,
            start=row.date_start,
            end=row.date_end,
            buffer_before_min=row.buffer_before_min,
            buffer_after_min=row.buffer_after_min,
            conflict_start=row.conflict_start,
            conflict_end=row.conflict_end,
            status=row.status,
            version=row.version,
            idempotency_key=row.idempotency_key,
            principal=row.principal,
            cancel_reason=row.cancel_reason,
            rescheduled_from_id=row.rescheduled_from_id,
            created_at=row.created_at,
            updated_at=row.updated_at,
            bindings=tuple(
                BindingView(
                    resource_id=b.resource_id,
                    role=b.role,
                    units=b.units,
                    conflict_start=b.conflict_start,
                    conflict_end=b.conflict_end,
                )
                for b in row.bindings
            ),
        )


@dataclass(frozen=True)
class CommitResult:
    reservation: ReservationView
    replayed: bool = False


@dataclass
class _Placement:
    primary: ResourceRef
    room: ResourceRef | None = None
    equipment: ResourceRef | None = None


class BookingCoordinator:
    """Commits reservations and drives their lifecycle."""

    def __init__(
        self,
        engine: Engine,
        redis: Redis | None = None,
        config: BookingConfig | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.redis = redis
        self.config = config or get_booking_config()
        self.clock = clock
        self.session_factory = make_session_factory(engine)

    # ── Reads ────────────────────────────────────────────────────────────

    def get_reservation(self, tenant_id: int, reservation_id: int) -> ReservationView:
        db = self.session_factory()
        try:
            row = self._find(db, tenant_id, reservation_id)
            return ReservationView.from_row(row)
        finally:
            db.close()

    def find_by_key(self, tenant_id: int, idempotency_key: str) -> ReservationView | None:
        db = self.session_factory()
        try:
            row = _find_by_key(db, tenant_id, idempotency_key)
            return ReservationView.from_row(row) if row else None
        finally:
            db.close()

    # ── Commit ───────────────────────────────────────────────────────────

    def commit(self, request: BookingRequest) -> CommitResult:
        """
        Commit a reservation, or return the existing one for a replayed key.

        Raises:
            ValidationException, NotFoundException: bad request
            StaleSnapshotError: fetched_at older than max staleness
            ConflictException: a bound resource is taken (names its kind)
            RuleViolationError: a policy rule rejected the slot
            TransientInfraError: store unavailable after bounded retries
        """
        self._prevalidate(request)

        existing = self.find_by_key(request.tenant_id, request.idempotency_key)
        if existing:
            logger.info(
                f"Idempotent replay: tenant={request.tenant_id} "
                f"key={request.idempotency_key} reservation={existing.id}"
            )
            return CommitResult(existing, replayed=True)

        now = self.clock()
        self._check_freshness(request, now)

        with SlotTokens(self.redis, self.config) as tokens:
            if request.explicit_resource_ids:
                tokens.acquire(
                    request.tenant_id,
                    request.explicit_resource_ids,
                    self._conflict_interval_for(request),
                )
            return self._with_retries(
                lambda: self._commit_once(request, now),
                f"commit tenant={request.tenant_id} key={request.idempotency_key}",
                on_integrity_error=lambda: self._replay_after_race(request),
            )

    def _commit_once(self, request: BookingRequest, now: datetime) -> CommitResult:
        with unit_of_work(self.engine, self.config.commit_timeout_seconds) as uow:
            # Re-check inside the write transaction; a duplicate may have committed meanwhile.
            existing = _find_by_key(uow, request.tenant_id, request.idempotency_key)
            if existing:
                return CommitResult(ReservationView.from_row(existing), replayed=True)

            reservation = self._place(uow, request, now)
            enqueue_event(uow, reservation, RESERVATION_CREATED)
            view = ReservationView.from_row(reservation)

        logger.info(
            f"Reservation committed: id={view.id} tenant={view.tenant_id} "
            f"resource={view.primary_resource_id} {view.start.isoformat()}..{view.end.isoformat()}"
        )
        return CommitResult(view)

    def _replay_after_race(self, request: BookingRequest) -> CommitResult | None:
        existing = self.find_by_key(request.tenant_id, request.idempotency_key)
        if existing is None:
            return None
        logger.info(
            f"Duplicate key lost the race, returning winner: "
            f"key={request.idempotency_key} reservation={existing.id}"
        )
        return CommitResult(existing, replayed=True)

    # ── Lifecycle ────────────────────────────────────────────────────────

    def cancel(
        self,
        tenant_id: int,
        reservation_id: int,
        reason: str | None = None,
    ) -> ReservationView:
        return self._transition(tenant_id, reservation_id, CANCELLED, reason=reason)

    def start(self, tenant_id: int, reservation_id: int) -> ReservationView:
        return self._transition(tenant_id, reservation_id, IN_PROGRESS)

    def complete(self, tenant_id: int, reservation_id: int) -> ReservationView:
        return self._transition(tenant_id, reservation_id, COMPLETED)

    def mark_no_show(self, tenant_id: int, reservation_id: int) -> ReservationView:
        return self._transition(tenant_id, reservation_id, NO_SHOW)

    def _transition(
        self,
        tenant_id: int,
        reservation_id: int,
        target: str,
        reason: str | None = None,
    ) -> ReservationView:
        def attempt() -> ReservationView:
            now = self.clock()
            with unit_of_work(self.engine, self.config.commit_timeout_seconds) as uow:
                row = self._find(uow, tenant_id, reservation_id, for_update=True)
                _apply_transition(row, target, now, reason)
                uow.flush()
                enqueue_event(uow, row, TRANSITION_EVENTS[target])
                return ReservationView.from_row(row)

        view = self._with_retries(attempt, f"{target} reservation={reservation_id}")
        logger.info(f"Reservation {reservation_id} → {target} (v{view.version})")
        return view

    def reschedule(
        self,
        tenant_id: int,
        reservation_id: int,
        request: BookingRequest,
    ) -> CommitResult:
        """
        Cancel a confirmed reservation and place its replacement atomically.

        The request carries the new slot and the replacement's own
        idempotency key; a replay returns the replacement unchanged.
        """
        if request.tenant_id != tenant_id:
            raise ValidationException("Tenant mismatch", code="tenant_mismatch")

        current = self.get_reservation(tenant_id, reservation_id)
        if request.service_id != current.service_id or request.location_id != current.location_id:
            raise ValidationException(
                "Rescheduling keeps the service and location",
                code="reschedule_scope_changed",
                details={"reservation_id": reservation_id},
            )
        self._prevalidate(request)

        existing = self.find_by_key(tenant_id, request.idempotency_key)
        if existing:
            if existing.rescheduled_from_id != reservation_id:
                raise ValidationException(
                    "Idempotency key already used by another reservation",
                    code="idempotency_key_reused",
                    details={"reservation_id": existing.id},
                )
            return CommitResult(existing, replayed=True)

        now = self.clock()
        self._check_freshness(request, now)

        def attempt() -> CommitResult:
            with unit_of_work(self.engine, self.config.commit_timeout_seconds) as uow:
                old = self._find(uow, tenant_id, reservation_id, for_update=True)
                if old.status != CONFIRMED:
                    raise InvalidTransitionError(reservation_id, old.status, RESCHEDULED_REASON)

                _apply_transition(old, CANCELLED, now, RESCHEDULED_REASON)
                # Flushed first so the old interval no longer blocks the new one.
                uow.flush()

                new = self._place(uow, request, now, rescheduled_from_id=old.id)
                enqueue_event(uow, old, RESERVATION_CANCELLED, {
                    "reason": RESCHEDULED_REASON,
                    "rescheduled_to_id": new.id,
                })
                enqueue_event(uow, new, RESERVATION_RESCHEDULED, {
                    "rescheduled_from_id": old.id,
                })
                return CommitResult(ReservationView.from_row(new))

        with SlotTokens(self.redis, self.config) as tokens:
            if request.explicit_resource_ids:
                tokens.acquire(tenant_id, request.explicit_resource_ids, self._conflict_interval_for(request))
            result = self._with_retries(
                attempt,
                f"reschedule reservation={reservation_id}",
                on_integrity_error=lambda: self._replay_after_race(request),
            )

        logger.info(f"Reservation {reservation_id} rescheduled → {result.reservation.id}")
        return result

    # ── Placement (inside a unit of work) ────────────────────────────────

    def _place(
        self,
        uow: Session,
        request: BookingRequest,
        now: datetime,
        rescheduled_from_id: int | None = None,
    ) -> Reservations:
        """Re-check every binding, evaluate rules and insert the reservation."""
        service = get_service(uow, request.tenant_id, request.service_id)
        location = get_location(uow, request.tenant_id, request.location_id)
        tz = get_timezone(location.timezone)
        store = IntervalStore(uow)

        slot = Interval(request.start, request.end)
        conflict = Interval(
            request.start - timedelta(minutes=service.buffer_before_min),
            request.end + timedelta(minutes=service.buffer_after_min),
        )

        primaries = self._primary_candidates(uow, request, service)
        rooms = self._room_candidates(uow, request, service)
        equipment = self._equipment_candidates(uow, request, service)

        _lock_resources(uow, [r.id for r in primaries + rooms + equipment])

        rules = order_rules(get_service_rules(uow, request.tenant_id, service.id), service)

        def local_day_of(dt: datetime):
            return utc_to_local(dt, tz).date()

        placement = None
        collision = off_hours = None
        for primary in primaries:
            try:
                self._check_binding(store, primary, conflict, 1)
                self._check_rules(store, rules, service, primary, slot, conflict, tz, now, local_day_of)
            except (ConflictException, RuleViolationError) as e:
                if request.primary_resource_id is not None:
                    raise
                collision = collision or e
                continue
            except ValidationException as e:
                if request.primary_resource_id is not None:
                    raise
                off_hours = off_hours or e
                continue
            placement = _Placement(primary)
            break

        if placement is None:
            # Collisions on candidates working at that time win over off-hours ones.
            raise collision or off_hours or ConflictException(PROVIDER)

        if service.requires_room:
            placement.room = self._pick_secondary(store, rooms, conflict, 1, ROOM, request.room_id)
        if service.equipment_type:
            placement.equipment = self._pick_secondary(
                store, equipment, conflict, service.equipment_units, EQUIPMENT, request.equipment_id,
            )

        reservation = Reservations(
            tenant_id=request.tenant_id,
            service_id=service.id,
            location_id=location.id,
            primary_resource_id=placement.primary.id,
            date_start=slot.start,
            date_end=slot.end,
            buffer_before_min=service.buffer_before_min,
            buffer_after_min=service.buffer_after_min,
            conflict_start=conflict.start,
            conflict_end=conflict.end,
            status=CONFIRMED,
            version=1,
            idempotency_key=request.idempotency_key,
            principal=request.principal,
            rescheduled_from_id=rescheduled_from_id,
            created_at=now,
            updated_at=now,
        )
        bound = [(placement.primary, ROLE_PRIMARY, 1)]
        if placement.room:
            bound.append((placement.room, ROLE_ROOM, 1))
        if placement.equipment:
            bound.append((placement.equipment, ROLE_EQUIPMENT, service.equipment_units))
        for resource, role, units in bound:
            reservation.bindings.append(ReservationResources(
                resource_id=resource.id,
                role=role,
                units=units,
                conflict_start=conflict.start,
                conflict_end=conflict.end,
            ))

        uow.add(reservation)
        uow.flush()
        return reservation

    def _primary_candidates(
        self,
        uow: Session,
        request: BookingRequest,
        service: ServiceSpec,
    ) -> list[ResourceRef]:
        eligible = get_eligible_primaries(uow, request.tenant_id, service.id, request.location_id)
        if request.primary_resource_id is None:
            # Auto: best-ranked first, ties on ascending id.
            return sorted(eligible, key=lambda r: (-r.ranking_weight, r.id))

        for resource in eligible:
            if resource.id == request.primary_resource_id:
                return [resource]
        resource = get_resource(uow, request.tenant_id, request.primary_resource_id)
        raise ValidationException(
            "Resource cannot provide this service at this location",
            code="resource_not_eligible",
            details={"resource_id": resource.id, "service_id": service.id},
        )

    def _room_candidates(self, uow: Session, request: BookingRequest, service: ServiceSpec) -> list[ResourceRef]:
        if not service.requires_room:
            return []
        options = get_secondary_options(uow, request.tenant_id, request.location_id, ROOM, service.room_type)
        return _narrow(uow, request.tenant_id, options, request.room_id, ROOM)

    def _equipment_candidates(
        self,
        uow: Session,
        request: BookingRequest,
        service: ServiceSpec,
    ) -> list[ResourceRef]:
        if not service.equipment_type:
            return []
        options = [
            item for item in get_secondary_options(
                uow, request.tenant_id, request.location_id, EQUIPMENT, service.equipment_type,
            )
            if item.capacity >= service.equipment_units
        ]
        return _narrow(uow, request.tenant_id, options, request.equipment_id, EQUIPMENT)

    def _pick_secondary(
        self,
        store: IntervalStore,
        options: list[ResourceRef],
        conflict: Interval,
        units: int,
        kind: str,
        requested_id: int | None,
    ) -> ResourceRef:
        """First option (by id) free for the whole buffered interval."""
        collision = off_hours = None
        for option in options:
            try:
                self._check_binding(store, option, conflict, units)
            except ConflictException as e:
                if requested_id is not None:
                    raise
                collision = collision or e
                continue
            except ValidationException as e:
                if requested_id is not None:
                    raise
                off_hours = off_hours or e
                continue
            return option
        raise collision or off_hours or ConflictException(kind, requested_id)

    @staticmethod
    def _check_binding(store: IntervalStore, resource: ResourceRef, conflict: Interval, units: int) -> None:
        windows = store.working_windows(resource, conflict)
        if not any(w.contains(conflict) for w in windows):
            raise ValidationException(
                f"Slot is outside the working hours of {resource.kind} {resource.id}",
                code="outside_working_hours",
                details={"resource_kind": resource.kind, "resource_id": resource.id},
            )

        busy = store.busy_intervals(resource.id, conflict)
        if any(overlaps(b, conflict) for b in saturated(busy, resource.capacity, units)):
            logger.info(f"Conflict on {resource.kind} {resource.id} for {conflict.start}..{conflict.end}")
            raise ConflictException(resource.kind, resource.id)

    @staticmethod
    def _check_rules(
        store: IntervalStore,
        rules,
        service: ServiceSpec,
        resource: ResourceRef,
        slot: Interval,
        conflict: Interval,
        tz,
        now: datetime,
        local_day_of,
    ) -> None:
        if not rules:
            return
        context_bounds = Interval(conflict.start - timedelta(days=1), conflict.end + timedelta(days=1))
        verdict = evaluate(rules, RuleContext(
            service=service,
            resource=resource,
            slot=slot,
            local_start=utc_to_local(slot.start, tz),
            now=now,
            reservations=tuple(store.context_reservations(resource.id, context_bounds)),
            local_day_of=local_day_of,
        ))
        if not verdict.passed:
            raise RuleViolationError(verdict.rule.id, verdict.rule.kind, verdict.reason)

    # ── Helpers ──────────────────────────────────────────────────────────

    def _prevalidate(self, request: BookingRequest) -> None:
        """Shape and catalog checks that need no lock."""
        if not request.idempotency_key or not request.idempotency_key.strip():
            raise ValidationException("Idempotency key is required", code="idempotency_key_required")
        if request.end <= request.start:
            raise ValidationException("Reservation end must be after its start", code="invalid_range")

        db = self.session_factory()
        try:
            service = get_service(db, request.tenant_id, request.service_id)
            get_location(db, request.tenant_id, request.location_id)

            if request.end - request.start != timedelta(minutes=service.duration_min):
                raise ValidationException(
                    f"Slot length must equal the service duration ({service.duration_min} min)",
                    code="duration_mismatch",
                    details={"duration_min": service.duration_min},
                )
            if request.room_id is not None and not service.requires_room:
                raise ValidationException(
                    "Service does not use a room",
                    code="room_not_required",
                    details={"service_id": service.id, "room_id": request.room_id},
                )
            if request.equipment_id is not None and not service.equipment_type:
                raise ValidationException(
                    "Service does not use equipment",
                    code="equipment_not_required",
                    details={"service_id": service.id, "equipment_id": request.equipment_id},
                )

            for resource_id, kind in (
                (request.primary_resource_id, PROVIDER),
                (request.room_id, ROOM),
                (request.equipment_id, EQUIPMENT),
            ):
                if resource_id is None:
                    continue
                resource = get_resource(db, request.tenant_id, resource_id)
                if resource.kind != kind or resource.location_id != request.location_id:
                    raise ValidationException(
                        f"Resource {resource_id} is not a {kind} at this location",
                        code="resource_mismatch",
                        details={"resource_id": resource_id, "expected_kind": kind},
                    )
        finally:
            db.close()

    def _check_freshness(self, request: BookingRequest, now: datetime) -> None:
        if request.fetched_at is None:
            return
        age = now - request.fetched_at
        if age > self.config.max_staleness:
            raise StaleSnapshotError(age.total_seconds(), self.config.max_staleness_seconds)

    def _conflict_interval_for(self, request: BookingRequest) -> Interval:
        db = self.session_factory()
        try:
            service = get_service(db, request.tenant_id, request.service_id)
        finally:
            db.close()
        return Interval(
            request.start - timedelta(minutes=service.buffer_before_min),
            request.end + timedelta(minutes=service.buffer_after_min),
        )

    def _find(
        self,
        db: Session,
        tenant_id: int,
        reservation_id: int,
        for_update: bool = False,
    ) -> Reservations:
        query = db.query(Reservations).filter(
            Reservations.id == reservation_id,
            Reservations.tenant_id == tenant_id,
        )
        if for_update:
            query = query.with_for_update()
        row = query.first()
        if not row:
            raise NotFoundException(
                "Reservation not found",
                code="reservation_not_found",
                details={"reservation_id": reservation_id},
            )
        return row

    def _with_retries(
        self,
        operation: Callable[[], T],
        description: str,
        on_integrity_error: Callable[[], T | None] | None = None,
    ) -> T:
        """
        Run one unit of work, retrying transient store failures.

        Lock timeouts and serialization failures surface as
        OperationalError; they are retried with exponential backoff until
        commit_max_retries or the commit timeout is exhausted.
        """
        deadline = time.monotonic() + self.config.commit_timeout_seconds
        attempt = 0
        while True:
            try:
                return operation()
            except IntegrityError:
                if on_integrity_error is not None:
                    result = on_integrity_error()
                    if result is not None:
                        return result
                raise
            except OperationalError as e:
                attempt += 1
                if attempt > self.config.commit_max_retries or time.monotonic() >= deadline:
                    logger.error(f"{description} failed after {attempt} attempt(s): {e}")
                    raise TransientInfraError(
                        "Reservation store unavailable, retry later",
                        code="store_unavailable",
                        details={"attempts": attempt},
                    )
                backoff = self.config.commit_retry_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"{description} transient failure (attempt {attempt}), retrying: {e}")
                time.sleep(backoff)


def _find_by_key(db: Session, tenant_id: int, idempotency_key: str) -> Reservations | None:
    return (
        db.query(Reservations)
        .filter(
            Reservations.tenant_id == tenant_id,
            Reservations.idempotency_key == idempotency_key,
        )
        .first()
    )


def _lock_resources(uow: Session, resource_ids: list[int]) -> None:
    """Row locks in id order (PostgreSQL); SQLite already holds the write lock."""
    if not resource_ids:
        return
    (
        uow.query(Resources.id)
        .filter(Resources.id.in_(sorted(set(resource_ids))))
        .order_by(Resources.id)
        .with_for_update()
        .all()
    )


def _narrow(
    db: Session,
    tenant_id: int,
    options: list[ResourceRef],
    requested_id: int | None,
    kind: str,
) -> list[ResourceRef]:
    if requested_id is None:
        return options
    for option in options:
        if option.id == requested_id:
            return [option]
    get_resource(db, tenant_id, requested_id)
    raise ValidationException(
        f"Requested {kind} does not meet the service requirements",
        code=f"{kind}_not_eligible",
        details={"resource_id": requested_id},
    )


def _apply_transition(row: Reservations, target: str, now: datetime, reason: str | None = None) -> None:
    if target not in ALLOWED_TRANSITIONS.get(row.status, set()):
        raise InvalidTransitionError(row.id, row.status, target)
    row.status = target
    row.version += 1
    row.updated_at = now
    if target == CANCELLED:
        row.cancel_reason = reason
