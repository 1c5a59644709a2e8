# backend/booking_core/services/slots/redis_store.py
"""
Redis storage for the busy projection using Hashes.

Key format: busy:day:{tenant_id}:{resource_id}:{YYYY-MM-DD}   (UTC day)
Value: Hash
    r:{reservation_id} → {"v": version, "active": bool, "start": ts, "end": ts, "units": n}
    __generation__     → bumped on every rebuild and every applied event
    __built_at__       → unix timestamp of the last rebuild from the store

Inactive members are kept as version tombstones so a late, older event
cannot resurrect a cancelled reservation.
"""

import json
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone

from redis import Redis

from .config import BookingConfig, get_booking_config
from .intervals import BusyInterval, Interval
from .store import ProjectionMember

GENERATION_FIELD = "__generation__"
BUILT_AT_FIELD = "__built_at__"
MEMBER_PREFIX = "r:"


@dataclass(frozen=True)
class ProjectionEntry:
    generation: int
    built_at: float
    members: dict[int, ProjectionMember]


@dataclass(frozen=True)
class ProjectionRead:
    busy: list[BusyInterval] | None  # None = at least one day missed
    missing_days: list[date]


def days_covering(bounds: Interval) -> list[date]:
    """UTC days touched by [start, end)."""
    first = bounds.start.date()
    last = (bounds.end - timedelta(microseconds=1)).date()
    days = []
    current = first
    while current <= last:
        days.append(current)
        current += timedelta(days=1)
    return days


def day_bounds(day: date) -> Interval:
    start = datetime.combine(day, datetime.min.time())
    return Interval(start, start + timedelta(days=1))


def to_ts(dt: datetime) -> float:
    return dt.replace(tzinfo=timezone.utc).timestamp()


def from_ts(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


def _encode(member: ProjectionMember) -> str:
    return json.dumps({
        "v": member.version,
        "active": member.active,
        "start": to_ts(member.start),
        "end": to_ts(member.end),
        "units": member.units,
    })


def _decode(reservation_id: int, raw: str) -> ProjectionMember:
    data = json.loads(raw)
    return ProjectionMember(
        reservation_id=reservation_id,
        version=int(data["v"]),
        active=bool(data["active"]),
        start=from_ts(data["start"]),
        end=from_ts(data["end"]),
        units=int(data.get("units", 1)),
    )


class BusyProjectionStore:
    """Redis storage wrapper for per-resource, per-day busy projections."""

    KEY_PREFIX = "busy:day"

    def __init__(self, redis: Redis, config: BookingConfig | None = None):
        self.redis = redis
        self.config = config or get_booking_config()

    def _key(self, tenant_id: int, resource_id: int, day: date) -> str:
        return f"{self.KEY_PREFIX}:{tenant_id}:{resource_id}:{day.isoformat()}"

    def _expire_seconds(self) -> int:
        return max(self.config.projection_ttl_seconds * 2, 60)

    # ── Write (event-consuming path only) ────────────────────────────────

    def store_day(
        self,
        tenant_id: int,
        resource_id: int,
        day: date,
        members: list[ProjectionMember],
        built_at: datetime,
    ) -> int:
        """
        Replace the entry for a day with a fresh snapshot.

        Returns the new generation.
        """
        key = self._key(tenant_id, resource_id, day)
        previous = self.redis.hget(key, GENERATION_FIELD)
        generation = int(previous or 0) + 1

        mapping = {f"{MEMBER_PREFIX}{m.reservation_id}": _encode(m) for m in members}
        mapping[GENERATION_FIELD] = str(generation)
        mapping[BUILT_AT_FIELD] = str(to_ts(built_at))

        pipe = self.redis.pipeline()
        pipe.delete(key)
        pipe.hset(key, mapping=mapping)
        pipe.expire(key, self._expire_seconds())
        pipe.execute()
        return generation

    def apply_member(
        self,
        tenant_id: int,
        resource_id: int,
        day: date,
        member: ProjectionMember,
    ) -> bool:
        """
        Apply one reservation version to a cached day.

        Days that are not cached are left alone (the next rebuild picks the
        reservation up from the store). Returns True when the entry changed.
        """
        key = self._key(tenant_id, resource_id, day)
        if not self.redis.exists(key):
            return False

        field = f"{MEMBER_PREFIX}{member.reservation_id}"
        current = self.redis.hget(key, field)
        if current is not None and _decode(member.reservation_id, current).version >= member.version:
            return False

        pipe = self.redis.pipeline()
        pipe.hset(key, field, _encode(member))
        pipe.hincrby(key, GENERATION_FIELD, 1)
        pipe.execute()
        return True

    # ── Read ─────────────────────────────────────────────────────────────

    def get_entry(self, tenant_id: int, resource_id: int, day: date) -> ProjectionEntry | None:
        raw = self.redis.hgetall(self._key(tenant_id, resource_id, day))
        if not raw:
            return None
        return self._parse_entry(raw)

    def read_busy(
        self,
        tenant_id: int,
        resource_id: int,
        bounds: Interval,
        now: datetime,
    ) -> ProjectionRead:
        """
        Busy intervals for a resource over bounds, or a miss.

        Any missing day, or any day older than the staleness bound, makes the
        whole read a miss.
        """
        days = days_covering(bounds)
        pipe = self.redis.pipeline()
        for day in days:
            pipe.hgetall(self._key(tenant_id, resource_id, day))
        results = pipe.execute()

        now_ts = to_ts(now)
        missing: list[date] = []
        members: dict[int, ProjectionMember] = {}
        for day, raw in zip(days, results):
            if not raw:
                missing.append(day)
                continue
            entry = self._parse_entry(raw)
            if now_ts - entry.built_at > self.config.projection_ttl_seconds:
                missing.append(day)
                continue
            members.update(entry.members)

        if missing:
            return ProjectionRead(busy=None, missing_days=missing)

        busy = sorted(
            BusyInterval(m.start, m.end, m.units)
            for m in members.values()
            if m.active and m.start < bounds.end and bounds.start < m.end
        )
        return ProjectionRead(busy=busy, missing_days=[])

    # ── Delete ───────────────────────────────────────────────────────────

    def delete_days(
        self,
        tenant_id: int,
        resource_id: int,
        days: list[date] | None = None,
    ) -> int:
        """
        Delete cached entries.

        Args:
            days: Specific UTC days, or None to delete all for the resource.

        Returns:
            Number of deleted keys.
        """
        if days:
            keys = [self._key(tenant_id, resource_id, day) for day in days]
        else:
            pattern = f"{self.KEY_PREFIX}:{tenant_id}:{resource_id}:*"
            keys = list(self.redis.scan_iter(pattern))

        if not keys:
            return 0

        return self.redis.delete(*keys)

    # ── Helpers ──────────────────────────────────────────────────────────

    @staticmethod
    def _parse_entry(raw: dict) -> ProjectionEntry:
        members: dict[int, ProjectionMember] = {}
        for field, value in raw.items():
            if field.startswith(MEMBER_PREFIX):
                reservation_id = int(field[len(MEMBER_PREFIX):])
                members[reservation_id] = _decode(reservation_id, value)
        return ProjectionEntry(
            generation=int(raw.get(GENERATION_FIELD, 0)),
            built_at=float(raw.get(BUILT_AT_FIELD, 0)),
            members=members,
        )
