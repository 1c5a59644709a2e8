# backend/booking_core/services/slots/catalog.py
"""
Read-only access to catalog records (locations, resources, services, rules).

The catalog collaborator owns these rows; the core only reads them, always
scoped to one tenant.
"""

import json
import logging
from dataclasses import dataclass, field

from sqlalchemy import or_
from sqlalchemy.orm import Session

from ...errors import NotFoundException, ValidationException
from ...models import Locations, PolicyRules, Resources, Services, t_service_resources

logger = logging.getLogger(__name__)

PROVIDER = "provider"
ROOM = "room"
EQUIPMENT = "equipment"


@dataclass(frozen=True)
class ResourceRef:
    """
    One reservable resource, whatever its kind.

    Providers and rooms are single-occupant (capacity 1); equipment may be
    pooled with N interchangeable units.
    """
    id: int
    tenant_id: int
    location_id: int
    kind: str
    capacity: int = 1
    resource_type: str | None = None
    ranking_weight: float = 0.0

    @property
    def pooled(self) -> bool:
        return self.capacity > 1

    @classmethod
    def from_row(cls, row: Resources, ranking_weight: float | None = None) -> "ResourceRef":
        capacity = row.capacity if row.kind == EQUIPMENT else 1
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            location_id=row.location_id,
            kind=row.kind,
            capacity=max(capacity or 1, 1),
            resource_type=row.resource_type,
            ranking_weight=float(ranking_weight if ranking_weight is not None else row.ranking_weight or 0),
        )


@dataclass(frozen=True)
class ServiceSpec:
    id: int
    tenant_id: int
    name: str
    duration_min: int
    buffer_before_min: int = 0
    buffer_after_min: int = 0
    requires_room: bool = False
    room_type: str | None = None
    equipment_type: str | None = None
    equipment_units: int = 1
    lead_time_min: int = 0

    @property
    def total_span_min(self) -> int:
        return self.buffer_before_min + self.duration_min + self.buffer_after_min

    @classmethod
    def from_row(cls, row: Services) -> "ServiceSpec":
        return cls(
            id=row.id,
            tenant_id=row.tenant_id,
            name=row.name,
            duration_min=row.duration_min,
            buffer_before_min=row.buffer_before_min or 0,
            buffer_after_min=row.buffer_after_min or 0,
            requires_room=bool(row.requires_room),
            room_type=row.room_type,
            equipment_type=row.equipment_type,
            equipment_units=row.equipment_units or 1,
            lead_time_min=row.lead_time_min or 0,
        )


@dataclass(frozen=True)
class RuleSpec:
    id: int
    kind: str
    priority: int
    payload: dict = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: PolicyRules) -> "RuleSpec":
        try:
            payload = json.loads(row.payload) if row.payload else {}
        except json.JSONDecodeError:
            logger.warning(f"Policy rule {row.id} has invalid payload JSON")
            payload = {"_invalid": True}
        return cls(id=row.id, kind=row.kind, priority=row.priority or 0, payload=payload)


# ── Lookups ──────────────────────────────────────────────────────────────


def get_location(db: Session, tenant_id: int, location_id: int) -> Locations:
    location = (
        db.query(Locations)
        .filter(
            Locations.id == location_id,
            Locations.tenant_id == tenant_id,
            Locations.is_active == 1,
        )
        .first()
    )
    if not location:
        raise NotFoundException(
            "Location not found", code="location_not_found", details={"location_id": location_id}
        )
    return location


def get_service(db: Session, tenant_id: int, service_id: int) -> ServiceSpec:
    service = (
        db.query(Services)
        .filter(
            Services.id == service_id,
            Services.tenant_id == tenant_id,
            Services.is_active == 1,
        )
        .first()
    )
    if not service:
        raise NotFoundException(
            "Service not found", code="service_not_found", details={"service_id": service_id}
        )
    if not service.duration_min or service.duration_min <= 0:
        raise ValidationException(
            f"Service {service_id} has no positive duration",
            code="invalid_service_duration",
            details={"service_id": service_id, "duration_min": service.duration_min},
        )
    return ServiceSpec.from_row(service)


def get_resource(db: Session, tenant_id: int, resource_id: int) -> ResourceRef:
    resource = (
        db.query(Resources)
        .filter(
            Resources.id == resource_id,
            Resources.tenant_id == tenant_id,
            Resources.is_active == 1,
        )
        .first()
    )
    if not resource:
        raise NotFoundException(
            "Resource not found", code="resource_not_found", details={"resource_id": resource_id}
        )
    return ResourceRef.from_row(resource)


def get_eligible_primaries(
    db: Session,
    tenant_id: int,
    service_id: int,
    location_id: int,
) -> list[ResourceRef]:
    """Active providers linked to the service at this location, by id."""
    rows = (
        db.query(Resources, t_service_resources.c.ranking_weight)
        .join(
            t_service_resources,
            Resources.id == t_service_resources.c.resource_id,
        )
        .filter(
            t_service_resources.c.service_id == service_id,
            t_service_resources.c.is_active == 1,
            Resources.tenant_id == tenant_id,
            Resources.location_id == location_id,
            Resources.is_active == 1,
        )
        .order_by(Resources.id)
        .all()
    )
    return [ResourceRef.from_row(row, weight) for row, weight in rows]


def get_secondary_options(
    db: Session,
    tenant_id: int,
    location_id: int,
    kind: str,
    resource_type: str | None,
) -> list[ResourceRef]:
    """Rooms or equipment at the location matching a service requirement."""
    query = db.query(Resources).filter(
        Resources.tenant_id == tenant_id,
        Resources.location_id == location_id,
        Resources.kind == kind,
        Resources.is_active == 1,
    )
    if resource_type:
        query = query.filter(Resources.resource_type == resource_type)
    return [ResourceRef.from_row(row) for row in query.order_by(Resources.id).all()]


def get_service_rules(db: Session, tenant_id: int, service_id: int) -> list[RuleSpec]:
    """Active rules for the service (and tenant-wide ones), unordered."""
    rows = (
        db.query(PolicyRules)
        .filter(
            PolicyRules.tenant_id == tenant_id,
            PolicyRules.is_active == 1,
            or_(PolicyRules.service_id == service_id, PolicyRules.service_id.is_(None)),
        )
        .all()
    )
    return [RuleSpec.from_row(row) for row in rows]
