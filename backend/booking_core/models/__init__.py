from .tables import (
    Base,
    metadata,
    Locations,
    Resources,
    AvailabilityWindows,
    Services,
    t_service_resources,
    PolicyRules,
    Reservations,
    ReservationResources,
    EventOutbox,
)

__all__ = [
    "Base",
    "metadata",
    "Locations",
    "Resources",
    "AvailabilityWindows",
    "Services",
    "t_service_resources",
    "PolicyRules",
    "Reservations",
    "ReservationResources",
    "EventOutbox",
]
