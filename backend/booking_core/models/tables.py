from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Table,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()
metadata = Base.metadata


# ── Catalog (read-only for the core) ────────────────────────────────────


class Locations(Base):
    __tablename__ = 'locations'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    name = Column(Text, nullable=False)
    timezone = Column(Text, nullable=False, server_default=text("'UTC'"))
    work_schedule = Column(Text, nullable=False, server_default=text("'{}'"))
    is_active = Column(Integer, nullable=False, server_default=text('1'))

    resources = relationship('Resources', back_populates='location')


class Resources(Base):
    __tablename__ = 'resources'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    location_id = Column(ForeignKey('locations.id', ondelete='CASCADE'), nullable=False)
    kind = Column(Text, nullable=False)  # provider / room / equipment
    name = Column(Text, nullable=False)
    capacity = Column(Integer, nullable=False, server_default=text('1'))
    resource_type = Column(Text)  # room type or equipment type
    ranking_weight = Column(Float, nullable=False, server_default=text('0'))
    is_active = Column(Integer, nullable=False, server_default=text('1'))

    location = relationship('Locations', back_populates='resources')
    windows = relationship('AvailabilityWindows', back_populates='resource')


class AvailabilityWindows(Base):
    __tablename__ = 'availability_windows'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    resource_id = Column(ForeignKey('resources.id', ondelete='CASCADE'), nullable=False, index=True)
    kind = Column(Text, nullable=False, server_default=text("'available'"))
    date_start = Column(DateTime, nullable=False)  # UTC
    date_end = Column(DateTime, nullable=False)  # UTC, exclusive
    recurrence = Column(Text)  # NULL / daily / weekly
    recurrence_until = Column(DateTime)  # UTC, exclusive bound on occurrence starts
    reason = Column(Text)

    resource = relationship('Resources', back_populates='windows')


class Services(Base):
    __tablename__ = 'services'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    name = Column(Text, nullable=False)
    duration_min = Column(Integer, nullable=False)
    buffer_before_min = Column(Integer, nullable=False, server_default=text('0'))
    buffer_after_min = Column(Integer, nullable=False, server_default=text('0'))
    requires_room = Column(Integer, nullable=False, server_default=text('0'))
    room_type = Column(Text)
    equipment_type = Column(Text)
    equipment_units = Column(Integer, nullable=False, server_default=text('1'))
    lead_time_min = Column(Integer, nullable=False, server_default=text('0'))
    is_active = Column(Integer, nullable=False, server_default=text('1'))


t_service_resources = Table(
    'service_resources', metadata,
    Column('service_id', ForeignKey('services.id', ondelete='CASCADE'), nullable=False),
    Column('resource_id', ForeignKey('resources.id', ondelete='CASCADE'), nullable=False),
    Column('ranking_weight', Float),  # NULL = use resource weight
    Column('is_active', Integer, nullable=False, server_default=text('1')),
    UniqueConstraint('service_id', 'resource_id')
)


class PolicyRules(Base):
    __tablename__ = 'policy_rules'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    service_id = Column(ForeignKey('services.id', ondelete='CASCADE'))  # NULL = tenant-wide
    kind = Column(Text, nullable=False)
    priority = Column(Integer, nullable=False, server_default=text('0'))
    payload = Column(Text, nullable=False, server_default=text("'{}'"))
    is_active = Column(Integer, nullable=False, server_default=text('1'))


# ── Reservations (owned by the booking coordinator) ─────────────────────


class Reservations(Base):
    __tablename__ = 'reservations'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'idempotency_key'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False, index=True)
    service_id = Column(ForeignKey('services.id'), nullable=False)
    location_id = Column(ForeignKey('locations.id'), nullable=False)
    primary_resource_id = Column(ForeignKey('resources.id'), nullable=False)
    date_start = Column(DateTime, nullable=False)  # UTC display interval
    date_end = Column(DateTime, nullable=False)
    buffer_before_min = Column(Integer, nullable=False, server_default=text('0'))
    buffer_after_min = Column(Integer, nullable=False, server_default=text('0'))
    conflict_start = Column(DateTime, nullable=False)  # date_start - buffer_before
    conflict_end = Column(DateTime, nullable=False)  # date_end + buffer_after
    status = Column(Text, nullable=False, server_default=text("'confirmed'"))
    version = Column(Integer, nullable=False, server_default=text('1'))
    idempotency_key = Column(Text, nullable=False)
    principal = Column(Text)
    cancel_reason = Column(Text)
    rescheduled_from_id = Column(ForeignKey('reservations.id'))
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)

    bindings = relationship(
        'ReservationResources',
        back_populates='reservation',
        order_by='ReservationResources.id',
    )


class ReservationResources(Base):
    __tablename__ = 'reservation_resources'
    __table_args__ = (
        Index('ix_reservation_resources_overlap', 'resource_id', 'conflict_start', 'conflict_end'),
    )

    id = Column(Integer, primary_key=True)
    reservation_id = Column(ForeignKey('reservations.id', ondelete='CASCADE'), nullable=False, index=True)
    resource_id = Column(ForeignKey('resources.id'), nullable=False)
    role = Column(Text, nullable=False)  # primary / room / equipment
    units = Column(Integer, nullable=False, server_default=text('1'))
    conflict_start = Column(DateTime, nullable=False)
    conflict_end = Column(DateTime, nullable=False)

    reservation = relationship('Reservations', back_populates='bindings')


class EventOutbox(Base):
    __tablename__ = 'event_outbox'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, nullable=False)
    event_type = Column(Text, nullable=False)
    reservation_id = Column(ForeignKey('reservations.id'), nullable=False, index=True)
    version = Column(Integer, nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(Text, nullable=False, server_default=text("'pending'"), index=True)
    attempt_count = Column(Integer, nullable=False, server_default=text('0'))
    next_attempt_at = Column(DateTime)
    last_error = Column(Text)
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)
