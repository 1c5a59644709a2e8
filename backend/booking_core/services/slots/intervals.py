# backend/booking_core/services/slots/intervals.py
"""
Half-open interval algebra over resource calendars.

All intervals are [start, end): a reservation ending at T and one starting
at T do not conflict. Functions return new, sorted lists and never mutate
their inputs.
"""

from datetime import datetime, timedelta
from typing import Iterable, Iterator, NamedTuple


class Interval(NamedTuple):
    start: datetime
    end: datetime

    @property
    def duration(self) -> timedelta:
        return self.end - self.start

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(self, other)

    def contains(self, other: "Interval") -> bool:
        return self.start <= other.start and other.end <= self.end


class BusyInterval(NamedTuple):
    """Occupied span on a resource; units > 1 only for pooled resources."""
    start: datetime
    end: datetime
    units: int = 1


def overlaps(a, b) -> bool:
    """Conflict test shared by search and commit."""
    return a.start < b.end and b.start < a.end


def merge(intervals: Iterable) -> list[Interval]:
    """Sort and join overlapping or adjacent intervals. Empty ones are dropped."""
    ordered = sorted(
        (Interval(i.start, i.end) for i in intervals if i.end > i.start),
        key=lambda i: (i.start, i.end),
    )
    if not ordered:
        return []

    merged = [ordered[0]]
    for current in ordered[1:]:
        last = merged[-1]
        if current.start <= last.end:
            if current.end > last.end:
                merged[-1] = Interval(last.start, current.end)
        else:
            merged.append(current)
    return merged


def intersect(left: Iterable, right: Iterable) -> list[Interval]:
    """Intersection of two interval sets."""
    a = merge(left)
    b = merge(right)
    result: list[Interval] = []
    i = j = 0
    while i < len(a) and j < len(b):
        start = max(a[i].start, b[j].start)
        end = min(a[i].end, b[j].end)
        if start < end:
            result.append(Interval(start, end))
        if a[i].end < b[j].end:
            i += 1
        else:
            j += 1
    return result


def subtract(base: Iterable, blocks: Iterable) -> list[Interval]:
    """Remove every block from the base set."""
    remaining = merge(base)
    cuts = merge(blocks)
    if not cuts:
        return remaining

    result: list[Interval] = []
    for interval in remaining:
        pieces = [interval]
        for block in cuts:
            if block.start >= interval.end:
                break
            if block.end <= interval.start:
                continue
            next_pieces = []
            for piece in pieces:
                if not overlaps(piece, block):
                    next_pieces.append(piece)
                    continue
                if piece.start < block.start:
                    next_pieces.append(Interval(piece.start, block.start))
                if block.end < piece.end:
                    next_pieces.append(Interval(block.end, piece.end))
            pieces = next_pieces
        result.extend(pieces)
    return result


def clip(intervals: Iterable, bounds: Interval) -> list[Interval]:
    return intersect(intervals, [bounds])


def saturated(busy: Iterable[BusyInterval], capacity: int, units: int = 1) -> list[Interval]:
    """
    Spans where `units` more cannot fit next to the busy load.

    Sweep over start/end events; a span is saturated when
    load + units > capacity. For capacity 1 this is simply the union of
    the busy intervals.
    """
    events: list[tuple[datetime, int]] = []
    for b in busy:
        if b.end <= b.start:
            continue
        events.append((b.start, b.units))
        events.append((b.end, -b.units))
    if not events:
        return []

    # Ends sort before starts at the same instant (half-open).
    events.sort(key=lambda e: (e[0], e[1]))

    blocked: list[Interval] = []
    load = 0
    seg_start: datetime | None = None
    for instant, delta in events:
        load += delta
        full = load + units > capacity
        if full and seg_start is None:
            seg_start = instant
        elif not full and seg_start is not None:
            if instant > seg_start:
                blocked.append(Interval(seg_start, instant))
            seg_start = None
    return merge(blocked)


def slice_windows(
    free: Interval,
    span: timedelta,
    step: timedelta,
) -> Iterator[Interval]:
    """Fixed-step windows of length `span` that fit entirely inside `free`."""
    if step <= timedelta(0) or span <= timedelta(0):
        raise ValueError(f"span and step must be positive, got span={span} step={step}")
    start = free.start
    while start + span <= free.end:
        yield Interval(start, start + span)
        start += step
