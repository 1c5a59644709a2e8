# backend/booking_core/services/slots/schedule.py
"""
Catalog calendars → UTC intervals.

Contains:
✓ location operating hours (work_schedule JSON, local wall-clock)
✓ recurrence expansion of availability windows (daily / weekly)

Both expand in the location's local time so that "09:00" stays 09:00 on
either side of a DST change.
"""

import json
import logging
from datetime import date, datetime, time, timedelta

import pytz

from .intervals import Interval, merge
from .timezones import utc_to_local, wall_clock_to_utc

logger = logging.getLogger(__name__)

DAY_NAMES = ["mon", "tue", "wed", "thu", "fri", "sat", "sun"]
RECURRENCE_STEPS = {
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
}


def parse_schedule(raw: str | dict | None) -> dict:
    if isinstance(raw, dict):
        return raw
    try:
        return json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        logger.warning(f"Invalid work_schedule JSON ignored: {raw[:100]!r}")
        return {}


def get_day_intervals(schedule: dict, target_date: date) -> list[list[str]]:
    """
    Extract working intervals for target_date from schedule.

    Supports both formats:
      Format A: {"mon": {"start": "09:00", "end": "18:00"}} or {"mon": [["09:00", "13:00"], ...]}
      Format B: {"0": [["09:00", "18:00"]]}

    Returns list of intervals: [["09:00", "18:00"], ...]
    """
    weekday = target_date.weekday()  # 0 = Monday, 6 = Sunday

    weekday_str = str(weekday)
    if weekday_str in schedule:
        intervals = schedule[weekday_str]
        if isinstance(intervals, list):
            return intervals
        return []

    day_name = DAY_NAMES[weekday]
    if day_name in schedule:
        day_data = schedule[day_name]

        if day_data is None:
            return []

        if isinstance(day_data, dict):
            start = day_data.get("start")
            end = day_data.get("end")
            if start and end:
                return [[start, end]]

        if isinstance(day_data, list):
            return day_data

    return []


def parse_hhmm(value: str) -> tuple[int, int]:
    hour, minute = value.strip().split(":")
    return int(hour), int(minute)


def operating_hours(
    raw_schedule: str | dict | None,
    tz: pytz.BaseTzInfo,
    bounds: Interval,
) -> list[Interval] | None:
    """
    Operating hours overlapping `bounds`, in UTC.

    Returns None when the location declares no schedule at all
    (unrestricted), [] when it is closed for the whole range.
    """
    schedule = parse_schedule(raw_schedule)
    if not schedule:
        return None

    first_day = utc_to_local(bounds.start, tz).date() - timedelta(days=1)
    last_day = utc_to_local(bounds.end, tz).date()

    hours: list[Interval] = []
    day = first_day
    while day <= last_day:
        for interval in get_day_intervals(schedule, day):
            if len(interval) != 2:
                continue
            try:
                start_h, start_m = parse_hhmm(interval[0])
                end_h, end_m = parse_hhmm(interval[1])
            except (ValueError, AttributeError):
                logger.warning(f"Invalid schedule interval ignored: {interval!r}")
                continue

            start = wall_clock_to_utc(day, time(start_h, start_m), tz)
            if (end_h, end_m) == (24, 0):
                end = wall_clock_to_utc(day + timedelta(days=1), time(0, 0), tz)
            else:
                end = wall_clock_to_utc(day, time(end_h, end_m), tz)
            if end > start:
                hours.append(Interval(start, end))
        day += timedelta(days=1)

    return [h for h in merge(hours) if h.overlaps(bounds)]


def expand_window(
    date_start: datetime,
    date_end: datetime,
    recurrence: str | None,
    recurrence_until: datetime | None,
    tz: pytz.BaseTzInfo,
    bounds: Interval,
) -> list[Interval]:
    """Occurrences of one availability window that overlap `bounds`."""
    if not recurrence:
        window = Interval(date_start, date_end)
        return [window] if window.overlaps(bounds) else []

    step = RECURRENCE_STEPS.get(recurrence)
    if step is None:
        logger.warning(f"Unknown recurrence {recurrence!r}, treating window as one-off")
        window = Interval(date_start, date_end)
        return [window] if window.overlaps(bounds) else []

    local_start = utc_to_local(date_start, tz)
    local_end = utc_to_local(date_end, tz)

    # Skip occurrences that end before the bounds; one step of slack for DST.
    skip = max(0, (bounds.start - date_end) // step - 1)

    occurrences: list[Interval] = []
    k = skip
    while True:
        occ_local_start = local_start + k * step
        occ_local_end = local_end + k * step
        start = wall_clock_to_utc(occ_local_start.date(), occ_local_start.time(), tz)
        end = wall_clock_to_utc(occ_local_end.date(), occ_local_end.time(), tz)
        if start >= bounds.end:
            break
        if recurrence_until is not None and start >= recurrence_until:
            break
        occurrence = Interval(start, end)
        if occurrence.overlaps(bounds):
            occurrences.append(occurrence)
        k += 1
    return occurrences
