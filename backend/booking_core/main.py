# backend/booking_core/main.py

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from redis import Redis
from redis.exceptions import RedisError
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .config import settings
from .database import get_db, get_engine, get_session_factory
from .dependencies import get_coordinator, get_redis_client
from .errors import DomainException
from .models import Base
from .redis_client import get_redis
from .routers import projection, reservations, slots
from .services.completion_checker import completion_checker_loop
from .services.consumer import projection_consumer_loop, retry_consumer_loop
from .services.events import outbox_relay_loop
from .services.slots import get_booking_config
from .services.slots.invalidator import ProjectionCache
from .services.slots.redis_store import BusyProjectionStore

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    engine = get_engine()
    Base.metadata.create_all(engine)

    tasks: list[asyncio.Task] = []
    if settings.run_background_tasks:
        redis = get_redis()
        cache = ProjectionCache(BusyProjectionStore(redis, get_booking_config()), get_session_factory())
        tasks = [
            asyncio.create_task(outbox_relay_loop(
                engine, redis, settings.outbox_poll_interval, settings.outbox_batch_size,
            )),
            asyncio.create_task(projection_consumer_loop(
                settings.redis_url, redis, cache, settings.consumer_max_retries,
            )),
            asyncio.create_task(retry_consumer_loop(settings.redis_url)),
            asyncio.create_task(completion_checker_loop(
                get_coordinator(), settings.completion_grace_minutes, settings.completion_check_interval,
            )),
        ]
        logger.info(f"Started {len(tasks)} background task(s)")

    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


app = FastAPI(title="Availability & Booking Core", lifespan=lifespan)

app.include_router(slots.router)
app.include_router(reservations.router)
app.include_router(projection.router)


@app.exception_handler(DomainException)
async def domain_exception_handler(request: Request, exc: DomainException):
    http_exc = exc.to_http_exception()
    if http_exc.status_code >= 500:
        logger.warning(f"{request.method} {request.url.path} → {exc.code}: {exc.message}")
    return JSONResponse(status_code=http_exc.status_code, content={"detail": http_exc.detail})


@app.get("/health")
def health(redis: Redis = Depends(get_redis_client), db: Session = Depends(get_db)):
    try:
        redis_ok = bool(redis.ping())
    except RedisError:
        redis_ok = False

    try:
        db.execute(text("SELECT 1"))
        db_ok = True
    except SQLAlchemyError:
        db_ok = False

    return {"status": "ok" if db_ok else "degraded", "database": db_ok, "redis": redis_ok}
