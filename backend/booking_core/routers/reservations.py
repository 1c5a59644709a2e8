# backend/booking_core/routers/reservations.py
# Reservations are never deleted or patched; changes go through the lifecycle endpoints.

from datetime import datetime, timedelta

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import RequestContext, get_coordinator, get_request_context
from ..schemas.reservations import (
    ReservationCancel,
    ReservationCreate,
    ReservationRead,
    ReservationReschedule,
)
from ..services.booking import BookingCoordinator, BookingRequest, ReservationView
from ..services.slots.catalog import get_location, get_service
from ..services.slots.timezones import as_utc, get_timezone, local_to_utc, to_utc_naive

router = APIRouter(prefix="/reservations", tags=["reservations"])


def _to_read(view: ReservationView, replayed: bool = False) -> ReservationRead:
    data = ReservationRead.model_validate(view)
    return data.model_copy(update={
        "start": as_utc(view.start),
        "end": as_utc(view.end),
        "replayed": replayed,
    })


def _resolve_interval(
    db: Session,
    tenant_id: int,
    service_id: int,
    location_id: int,
    start: datetime,
    end: datetime | None,
) -> tuple[datetime, datetime]:
    """Naive values are location wall-clock (strict DST); aware ones are absolute."""
    tz = get_timezone(get_location(db, tenant_id, location_id).timezone)
    start_utc = local_to_utc(start, tz)
    if end is None:
        duration = get_service(db, tenant_id, service_id).duration_min
        return start_utc, start_utc + timedelta(minutes=duration)
    return start_utc, local_to_utc(end, tz)


@router.post("/", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
def create_reservation(
    data: ReservationCreate,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    start, end = _resolve_interval(db, ctx.tenant_id, data.service_id, data.location_id, data.start, data.end)
    result = coordinator.commit(BookingRequest(
        tenant_id=ctx.tenant_id,
        service_id=data.service_id,
        location_id=data.location_id,
        start=start,
        end=end,
        idempotency_key=data.idempotency_key,
        primary_resource_id=data.primary_resource_id,
        room_id=data.room_id,
        equipment_id=data.equipment_id,
        fetched_at=to_utc_naive(data.fetched_at) if data.fetched_at else None,
        principal=ctx.principal,
    ))
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return _to_read(result.reservation, result.replayed)


@router.get("/{id}", response_model=ReservationRead)
def get_reservation(
    id: int,
    ctx: RequestContext = Depends(get_request_context),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    return _to_read(coordinator.get_reservation(ctx.tenant_id, id))


@router.post("/{id}/cancel", response_model=ReservationRead)
def cancel_reservation(
    id: int,
    data: ReservationCancel | None = None,
    ctx: RequestContext = Depends(get_request_context),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    reason = data.reason if data else None
    return _to_read(coordinator.cancel(ctx.tenant_id, id, reason=reason))


@router.post("/{id}/start", response_model=ReservationRead)
def start_reservation(
    id: int,
    ctx: RequestContext = Depends(get_request_context),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    return _to_read(coordinator.start(ctx.tenant_id, id))


@router.post("/{id}/complete", response_model=ReservationRead)
def complete_reservation(
    id: int,
    ctx: RequestContext = Depends(get_request_context),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    return _to_read(coordinator.complete(ctx.tenant_id, id))


@router.post("/{id}/no-show", response_model=ReservationRead)
def mark_no_show(
    id: int,
    ctx: RequestContext = Depends(get_request_context),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    return _to_read(coordinator.mark_no_show(ctx.tenant_id, id))


@router.post("/{id}/reschedule", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
def reschedule_reservation(
    id: int,
    data: ReservationReschedule,
    response: Response,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    coordinator: BookingCoordinator = Depends(get_coordinator),
):
    current = coordinator.get_reservation(ctx.tenant_id, id)
    start, end = _resolve_interval(db, ctx.tenant_id, current.service_id, current.location_id, data.start, data.end)
    result = coordinator.reschedule(ctx.tenant_id, id, BookingRequest(
        tenant_id=ctx.tenant_id,
        service_id=current.service_id,
        location_id=current.location_id,
        start=start,
        end=end,
        idempotency_key=data.idempotency_key,
        primary_resource_id=data.primary_resource_id or current.primary_resource_id,
        room_id=data.room_id,
        equipment_id=data.equipment_id,
        fetched_at=to_utc_naive(data.fetched_at) if data.fetched_at else None,
        principal=ctx.principal,
    ))
    if result.replayed:
        response.status_code = status.HTTP_200_OK
    return _to_read(result.reservation, result.replayed)


@router.patch("/{id}")
def patch_not_allowed():
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Method not allowed",
    )


@router.delete("/{id}")
def delete_not_allowed():
    raise HTTPException(
        status_code=status.HTTP_405_METHOD_NOT_ALLOWED,
        detail="Method not allowed",
    )
