# backend/booking_core/routers/slots.py
"""
Slots API endpoints.

GET /slots/search - ranked candidate slots for a service at a location
"""

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, Query
from redis import Redis
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import (
    RequestContext,
    get_config,
    get_projection_store,
    get_redis_client,
    get_request_context,
)
from ..schemas.slots import SecondaryOptions, SlotCandidateRead, SlotSearchResponse
from ..services.slots import BookingConfig
from ..services.slots.availability import SearchPreferences, SearchQuery, SlotSearch
from ..services.slots.catalog import get_location
from ..services.slots.invalidator import request_rebuild
from ..services.slots.redis_store import BusyProjectionStore
from ..services.slots.timezones import as_utc, utcnow

router = APIRouter(prefix="/slots", tags=["slots"])


@router.get("/search", response_model=SlotSearchResponse)
def search_slots(
    service_id: int,
    location_id: int,
    start: datetime = Query(..., description="Range start; naive values are location wall-clock"),
    end: datetime = Query(..., description="Range end (exclusive)"),
    resource_id: list[int] | None = Query(None, description="Restrict to these primary resources"),
    preferred_resource_id: list[int] = Query([]),
    time_of_day: Literal["morning", "afternoon", "evening"] | None = None,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis_client),
    projection: BusyProjectionStore = Depends(get_projection_store),
    config: BookingConfig = Depends(get_config),
):
    """Candidate slots ordered by preference score, start time, resource id."""
    fetched_at = utcnow()
    search = SlotSearch(
        db,
        projection=projection,
        config=config,
        clock=lambda: fetched_at,
        request_rebuild=lambda tenant_id, rid, days: request_rebuild(redis, tenant_id, rid, days),
    )
    candidates = search.search(SearchQuery(
        tenant_id=ctx.tenant_id,
        service_id=service_id,
        location_id=location_id,
        range_start=start,
        range_end=end,
        resource_ids=tuple(resource_id) if resource_id is not None else None,
        preferences=SearchPreferences(
            preferred_resource_ids=tuple(preferred_resource_id),
            time_of_day=time_of_day,
        ),
    ))
    location = get_location(db, ctx.tenant_id, location_id)

    return SlotSearchResponse(
        service_id=service_id,
        location_id=location_id,
        timezone=location.timezone,
        fetched_at=as_utc(fetched_at),
        slots=[
            SlotCandidateRead(
                start=as_utc(c.start),
                end=as_utc(c.end),
                local_start=c.local_start,
                local_end=c.local_end,
                primary_resource_id=c.primary_resource_id,
                secondary_options=SecondaryOptions(
                    rooms=list(c.room_ids),
                    equipment=list(c.equipment_ids),
                ),
                rank_score=c.score,
            )
            for c in candidates
        ],
    )
