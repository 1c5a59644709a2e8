# backend/booking_core/schemas/reservations.py

from datetime import datetime
from pydantic import BaseModel, Field


class ReservationCreate(BaseModel):
    service_id: int
    location_id: int
    start: datetime  # naive = location wall-clock, aware = absolute
    end: datetime | None = None  # defaults to start + service duration
    idempotency_key: str = Field(min_length=1, max_length=200)
    primary_resource_id: int | None = None  # None = auto
    room_id: int | None = None
    equipment_id: int | None = None
    fetched_at: datetime | None = None


class ReservationReschedule(BaseModel):
    start: datetime
    end: datetime | None = None
    idempotency_key: str = Field(min_length=1, max_length=200)
    primary_resource_id: int | None = None  # None = keep current
    room_id: int | None = None
    equipment_id: int | None = None
    fetched_at: datetime | None = None


class ReservationCancel(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class BindingRead(BaseModel):
    resource_id: int
    role: str
    units: int
    conflict_start: datetime
    conflict_end: datetime

    model_config = {"from_attributes": True}


class ReservationRead(BaseModel):
    id: int
    tenant_id: int
    service_id: int
    location_id: int
    primary_resource_id: int
    start: datetime
    end: datetime
    buffer_before_min: int
    buffer_after_min: int
    status: str
    version: int
    idempotency_key: str
    principal: str | None = None
    cancel_reason: str | None = None
    rescheduled_from_id: int | None = None
    created_at: datetime
    updated_at: datetime
    bindings: list[BindingRead] = []
    replayed: bool = False

    model_config = {"from_attributes": True}
