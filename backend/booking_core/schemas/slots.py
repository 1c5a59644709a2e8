# backend/booking_core/schemas/slots.py
"""
Pydantic schemas for slot search API.
"""

from datetime import datetime
from pydantic import BaseModel, Field


class SecondaryOptions(BaseModel):
    """Feasible secondary resources for one slot."""
    rooms: list[int] = []
    equipment: list[int] = []

    model_config = {"from_attributes": True}


class SlotCandidateRead(BaseModel):
    """One bookable slot bound to a primary resource."""
    start: datetime  # UTC
    end: datetime
    local_start: datetime  # location wall-clock
    local_end: datetime
    primary_resource_id: int
    secondary_options: SecondaryOptions
    rank_score: float

    model_config = {"from_attributes": True}


class SlotSearchResponse(BaseModel):
    service_id: int
    location_id: int
    timezone: str
    fetched_at: datetime = Field(description="Pass back as fetched_at when booking one of these slots")
    slots: list[SlotCandidateRead]

    model_config = {"from_attributes": True}
