# backend/booking_core/services/slots/__init__.py
"""
Availability module.

Interval Store: working windows and busy intervals from the store (authoritative)
Busy projection: per-resource, per-day busy intervals cached in Redis (advisory)
Slot search: ranked candidates built from both, filtered by policy rules
"""

from .config import BookingConfig, get_booking_config
from .intervals import BusyInterval, Interval
from .store import BLOCKING_STATUSES, IntervalStore

__all__ = [
    "BookingConfig",
    "get_booking_config",
    "BusyInterval",
    "Interval",
    "BLOCKING_STATUSES",
    "IntervalStore",
]
