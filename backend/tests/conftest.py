import fnmatch
import json
import threading
from collections import defaultdict
from datetime import datetime, timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from booking_core.database import make_engine, make_session_factory
from booking_core.models import (
    AvailabilityWindows,
    Base,
    Locations,
    PolicyRules,
    Resources,
    Services,
    t_service_resources,
)
from booking_core.services.booking import BookingCoordinator, BookingRequest
from booking_core.services.slots import BookingConfig

TENANT = 1
NOW = datetime(2025, 3, 3, 7, 0)  # Monday, naive UTC


class FakePipeline:
    def __init__(self, backend: "FakeRedis") -> None:
        self.backend = backend
        self.ops = []

    def __getattr__(self, name):
        method = getattr(self.backend, name)

        def queue(*args, **kwargs):
            self.ops.append(lambda: method(*args, **kwargs))
            return self

        return queue

    def execute(self):
        results = [op() for op in self.ops]
        self.ops = []
        return results


class FakeRedis:
    """In-memory stand-in for the sync client (decode_responses=True)."""

    def __init__(self) -> None:
        self.hashes: dict[str, dict[str, str]] = {}
        self.strings: dict[str, str] = {}
        self.lists: dict[str, list[str]] = defaultdict(list)
        self.expiries: dict[str, int] = {}
        self._lock = threading.RLock()

    def ping(self):
        return True

    def pipeline(self):
        return FakePipeline(self)

    def exists(self, key):
        return int(key in self.hashes or key in self.strings or bool(self.lists.get(key)))

    def delete(self, *keys):
        deleted = 0
        with self._lock:
            for key in keys:
                for store in (self.hashes, self.strings, self.lists):
                    if key in store:
                        del store[key]
                        deleted += 1
        return deleted

    def expire(self, key, seconds):
        self.expiries[key] = seconds
        return True

    # Hashes
    def hget(self, key, field):
        return self.hashes.get(key, {}).get(field)

    def hset(self, key, field=None, value=None, mapping=None):
        with self._lock:
            h = self.hashes.setdefault(key, {})
            items = dict(mapping or {})
            if field is not None:
                items[field] = value
            added = 0
            for f, v in items.items():
                if f not in h:
                    added += 1
                h[f] = str(v)
            return added

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def hincrby(self, key, field, amount=1):
        with self._lock:
            h = self.hashes.setdefault(key, {})
            h[field] = str(int(h.get(field, 0)) + amount)
            return int(h[field])

    def scan_iter(self, pattern):
        return [k for k in list(self.hashes) + list(self.strings) if fnmatch.fnmatchcase(k, pattern)]

    # Strings
    def set(self, key, value, nx=False, px=None):
        with self._lock:
            if nx and key in self.strings:
                return None
            self.strings[key] = value
            return True

    def get(self, key):
        return self.strings.get(key)

    # Lists
    def rpush(self, key, *values):
        with self._lock:
            self.lists[key].extend(values)
            return len(self.lists[key])

    def lpop(self, key):
        with self._lock:
            items = self.lists.get(key)
            return items.pop(0) if items else None

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    def messages(self, key) -> list[dict]:
        return [json.loads(raw) for raw in self.lists.get(key, [])]


class BrokenRedis:
    """Every command fails as if the server were unreachable."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise RedisConnectionError("connection refused")
        return fail


class Catalog:
    """Seeds catalog rows, committing each one."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def _add(self, row):
        db = self.session_factory()
        try:
            db.add(row)
            db.commit()
            return row.id
        finally:
            db.close()

    def location(self, timezone="UTC", work_schedule=None, tenant_id=TENANT):
        return self._add(Locations(
            tenant_id=tenant_id,
            name="Main",
            timezone=timezone,
            work_schedule=json.dumps(work_schedule or {}),
        ))

    def resource(self, location_id, kind="provider", capacity=1, resource_type=None,
                 ranking_weight=0.0, tenant_id=TENANT, name=None):
        return self._add(Resources(
            tenant_id=tenant_id,
            location_id=location_id,
            kind=kind,
            name=name or kind,
            capacity=capacity,
            resource_type=resource_type,
            ranking_weight=ranking_weight,
        ))

    def window(self, resource_id, start, end, kind="available", recurrence=None,
               recurrence_until=None, tenant_id=TENANT):
        return self._add(AvailabilityWindows(
            tenant_id=tenant_id,
            resource_id=resource_id,
            kind=kind,
            date_start=start,
            date_end=end,
            recurrence=recurrence,
            recurrence_until=recurrence_until,
        ))

    def service(self, duration_min=30, tenant_id=TENANT, **fields):
        return self._add(Services(tenant_id=tenant_id, name="Service", duration_min=duration_min, **fields))

    def link(self, service_id, resource_id, ranking_weight=None):
        db = self.session_factory()
        try:
            db.execute(t_service_resources.insert().values(
                service_id=service_id,
                resource_id=resource_id,
                ranking_weight=ranking_weight,
            ))
            db.commit()
        finally:
            db.close()

    def rule(self, kind, payload, priority=0, service_id=None, tenant_id=TENANT):
        return self._add(PolicyRules(
            tenant_id=tenant_id,
            service_id=service_id,
            kind=kind,
            priority=priority,
            payload=json.dumps(payload),
        ))


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'booking.db'}", busy_timeout=30)
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def catalog(session_factory):
    return Catalog(session_factory)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def config():
    return BookingConfig(lock_wait_ms=50, commit_retry_backoff_seconds=0.01)


@pytest.fixture
def coordinator(engine, config):
    return BookingCoordinator(engine, redis=None, config=config, clock=lambda: NOW)


@pytest.fixture
def clinic(catalog):
    """
    UTC location, one 30-minute service, two providers free 09:00-12:00
    on Monday 2025-03-03.
    """
    location_id = catalog.location()
    service_id = catalog.service(duration_min=30)
    providers = []
    for _ in range(2):
        rid = catalog.resource(location_id)
        catalog.window(rid, datetime(2025, 3, 3, 9, 0), datetime(2025, 3, 3, 12, 0))
        catalog.link(service_id, rid)
        providers.append(rid)
    return {"location_id": location_id, "service_id": service_id, "providers": providers}


def slot_request(clinic, hour, minute=0, key=None, resource_index=0, day=3, **fields) -> BookingRequest:
    start = datetime(2025, 3, day, hour, minute)
    fields.setdefault("primary_resource_id", clinic["providers"][resource_index])
    return BookingRequest(
        tenant_id=TENANT,
        service_id=clinic["service_id"],
        location_id=clinic["location_id"],
        start=start,
        end=start + timedelta(minutes=30),
        idempotency_key=key or f"k-{day}-{hour}-{minute}-{resource_index}",
        **fields,
    )


def book(coordinator, clinic, hour, minute=0, **kwargs):
    return coordinator.commit(slot_request(clinic, hour, minute, **kwargs)).reservation
