# backend/booking_core/schemas/projection.py

from datetime import date, datetime
from pydantic import BaseModel


class ProjectionRebuildRequest(BaseModel):
    resource_id: int
    days: list[date]


class ProjectionRebuildResponse(BaseModel):
    resource_id: int
    days: list[date]
    queued: bool


class ProjectionMemberRead(BaseModel):
    reservation_id: int
    version: int
    active: bool
    start: datetime
    end: datetime
    units: int

    model_config = {"from_attributes": True}


class ProjectionDayRead(BaseModel):
    """Raw cached entry for one resource and UTC day (debug view)."""
    resource_id: int
    day: date
    cached: bool
    generation: int | None = None
    built_at: datetime | None = None
    members: list[ProjectionMemberRead] = []
