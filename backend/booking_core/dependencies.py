# backend/booking_core/dependencies.py
"""
FastAPI dependencies: request identity and service handles.

Identity is verified upstream; the core trusts the forwarded headers.
"""

from dataclasses import dataclass
from functools import lru_cache

from fastapi import Depends, Header, HTTPException, status
from redis import Redis

from .database import get_engine
from .redis_client import get_redis
from .services.booking import BookingCoordinator
from .services.slots import BookingConfig, get_booking_config
from .services.slots.redis_store import BusyProjectionStore

OPERATOR_ROLES = ("operator", "admin")


@dataclass(frozen=True)
class RequestContext:
    tenant_id: int
    principal: str | None = None
    role: str | None = None

    @property
    def is_operator(self) -> bool:
        return self.role in OPERATOR_ROLES


def get_request_context(
    x_tenant_id: int | None = Header(None),
    x_principal: str | None = Header(None),
    x_role: str | None = Header(None),
) -> RequestContext:
    if x_tenant_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing X-Tenant-Id")
    return RequestContext(tenant_id=x_tenant_id, principal=x_principal, role=x_role)


def require_operator(ctx: RequestContext = Depends(get_request_context)) -> RequestContext:
    if not ctx.is_operator:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Operator role required")
    return ctx


def get_config() -> BookingConfig:
    return get_booking_config()


def get_redis_client() -> Redis:
    return get_redis()


def get_projection_store(
    redis: Redis = Depends(get_redis_client),
    config: BookingConfig = Depends(get_config),
) -> BusyProjectionStore:
    return BusyProjectionStore(redis, config)


@lru_cache
def _default_coordinator() -> BookingCoordinator:
    return BookingCoordinator(get_engine(), get_redis(), get_booking_config())


def get_coordinator() -> BookingCoordinator:
    return _default_coordinator()
