# backend/booking_core/routers/projection.py
"""
Busy projection endpoints (operator / debug).

POST /projection/rebuild - queue a rebuild of cached days for a resource
GET  /projection/busy    - raw cached entry for a resource and UTC day
"""

from datetime import date

from fastapi import APIRouter, Depends
from redis import Redis
from sqlalchemy.orm import Session

from ..database import get_db
from ..dependencies import (
    RequestContext,
    get_projection_store,
    get_redis_client,
    get_request_context,
    require_operator,
)
from ..schemas.projection import (
    ProjectionDayRead,
    ProjectionMemberRead,
    ProjectionRebuildRequest,
    ProjectionRebuildResponse,
)
from ..services.slots.catalog import get_resource
from ..services.slots.invalidator import request_rebuild
from ..services.slots.redis_store import BusyProjectionStore, from_ts

router = APIRouter(prefix="/projection", tags=["projection"])


@router.post("/rebuild", response_model=ProjectionRebuildResponse)
def rebuild_projection(
    data: ProjectionRebuildRequest,
    ctx: RequestContext = Depends(require_operator),
    db: Session = Depends(get_db),
    redis: Redis = Depends(get_redis_client),
):
    """The consumer performs the rebuild; this only queues the command."""
    resource = get_resource(db, ctx.tenant_id, data.resource_id)
    days = sorted(set(data.days))
    request_rebuild(redis, ctx.tenant_id, resource.id, days)
    return ProjectionRebuildResponse(resource_id=resource.id, days=days, queued=bool(days))


@router.get("/busy", response_model=ProjectionDayRead)
def get_projection_day(
    resource_id: int,
    day: date,
    ctx: RequestContext = Depends(get_request_context),
    db: Session = Depends(get_db),
    store: BusyProjectionStore = Depends(get_projection_store),
):
    resource = get_resource(db, ctx.tenant_id, resource_id)
    entry = store.get_entry(ctx.tenant_id, resource.id, day)
    if entry is None:
        return ProjectionDayRead(resource_id=resource.id, day=day, cached=False)

    return ProjectionDayRead(
        resource_id=resource.id,
        day=day,
        cached=True,
        generation=entry.generation,
        built_at=from_ts(entry.built_at) if entry.built_at else None,
        members=[
            ProjectionMemberRead.model_validate(m)
            for _, m in sorted(entry.members.items())
        ],
    )
