# backend/booking_core/services/slots/timezones.py
"""
Local ↔ UTC conversion for a location's fixed IANA zone.

Inside the core every datetime is naive UTC. Caller-supplied local times are
resolved strictly: a wall-clock time skipped by spring-forward or repeated by
fall-back is rejected, never shifted.
"""

from datetime import date, datetime, time, timezone

import pytz

from ...errors import AmbiguousLocalTimeError, NonexistentLocalTimeError, ValidationException


def get_timezone(tz_name: str | None) -> pytz.BaseTzInfo:
    try:
        return pytz.timezone(tz_name or "UTC")
    except pytz.UnknownTimeZoneError:
        raise ValidationException(
            f"Unknown timezone: {tz_name}",
            code="unknown_timezone",
            details={"timezone": tz_name},
        )


def local_to_utc(naive_local: datetime, tz: pytz.BaseTzInfo) -> datetime:
    """Strict resolution of a caller-supplied local time."""
    if naive_local.tzinfo is not None:
        return to_utc_naive(naive_local)
    try:
        # is_dst=None raises for ambiguous/nonexistent times
        aware = tz.localize(naive_local, is_dst=None)
    except pytz.exceptions.NonExistentTimeError:
        raise NonexistentLocalTimeError(naive_local.isoformat(), tz.zone)
    except pytz.exceptions.AmbiguousTimeError:
        raise AmbiguousLocalTimeError(naive_local.isoformat(), tz.zone)
    return aware.astimezone(pytz.utc).replace(tzinfo=None)


def wall_clock_to_utc(target_date: date, wall: time, tz: pytz.BaseTzInfo) -> datetime:
    """
    Lenient resolution for catalog schedules (operating hours, recurrences).

    Boundaries that fall into a DST gap or overlap are read with the
    daylight offset instead of being rejected.
    """
    naive = datetime.combine(target_date, wall)
    aware = tz.normalize(tz.localize(naive, is_dst=True))
    return aware.astimezone(pytz.utc).replace(tzinfo=None)


def utc_to_local(utc_naive: datetime, tz: pytz.BaseTzInfo) -> datetime:
    """Naive UTC → naive local wall-clock time."""
    return pytz.utc.localize(utc_naive).astimezone(tz).replace(tzinfo=None)


def to_utc_naive(dt: datetime) -> datetime:
    """Aware datetime → naive UTC. Naive input is assumed to be UTC already."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def as_utc(utc_naive: datetime) -> datetime:
    """Naive UTC → aware UTC, for API responses."""
    return utc_naive.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)
