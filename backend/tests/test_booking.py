import json
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta

import pytest
from sqlalchemy.exc import OperationalError

from booking_core.errors import (
    ConflictException,
    InvalidTransitionError,
    NotFoundException,
    RuleViolationError,
    StaleSnapshotError,
    TransientInfraError,
    ValidationException,
)
from booking_core.models import EventOutbox, Reservations
from booking_core.services.booking import BookingCoordinator
from booking_core.services.completion_checker import complete_due_reservations
from booking_core.services.locks import SlotTokens
from booking_core.services.slots.intervals import Interval

from .conftest import NOW, TENANT, book, slot_request


def outbox(session_factory):
    db = session_factory()
    try:
        return [
            (row.event_type, row.reservation_id, row.version, json.loads(row.payload))
            for row in db.query(EventOutbox).order_by(EventOutbox.id).all()
        ]
    finally:
        db.close()


def count_reservations(session_factory):
    db = session_factory()
    try:
        return db.query(Reservations).count()
    finally:
        db.close()


# ── Commit ───────────────────────────────────────────────────────────────


def test_commit_creates_confirmed_reservation_and_outbox_event(coordinator, clinic, session_factory):
    result = coordinator.commit(slot_request(clinic, 9, 0, principal="alice"))

    reservation = result.reservation
    assert not result.replayed
    assert reservation.status == "confirmed"
    assert reservation.version == 1
    assert reservation.principal == "alice"
    assert [(b.role, b.resource_id) for b in reservation.bindings] == [("primary", clinic["providers"][0])]

    events = outbox(session_factory)
    assert [(e[0], e[1], e[2]) for e in events] == [("reservation.created", reservation.id, 1)]
    payload = events[0][3]
    assert payload["status"] == "confirmed"
    assert payload["bindings"][0]["conflict_start"] == "2025-03-03T09:00:00"


def test_idempotent_replay_returns_same_reservation(coordinator, clinic, session_factory):
    first = coordinator.commit(slot_request(clinic, 9, 0, key="same"))
    # a different slot under the same key is ignored
    second = coordinator.commit(slot_request(clinic, 10, 0, key="same"))

    assert second.replayed
    assert second.reservation.id == first.reservation.id
    assert second.reservation.start == datetime(2025, 3, 3, 9, 0)
    assert count_reservations(session_factory) == 1
    assert len(outbox(session_factory)) == 1


def test_idempotency_keys_are_scoped_per_tenant(coordinator, catalog, clinic):
    coordinator.commit(slot_request(clinic, 9, 0, key="shared"))

    location_id = catalog.location(tenant_id=2)
    service_id = catalog.service(tenant_id=2)
    provider = catalog.resource(location_id, tenant_id=2)
    catalog.window(provider, datetime(2025, 3, 3, 9, 0), datetime(2025, 3, 3, 12, 0), tenant_id=2)
    catalog.link(service_id, provider)
    other = slot_request(
        {"location_id": location_id, "service_id": service_id, "providers": [provider]}, 9, 0, key="shared",
    )

    result = coordinator.commit(replace(other, tenant_id=2))

    assert not result.replayed
    assert result.reservation.tenant_id == 2


def test_overlapping_commit_conflicts_on_provider(coordinator, clinic):
    book(coordinator, clinic, 9, 0)

    with pytest.raises(ConflictException) as exc:
        coordinator.commit(slot_request(clinic, 9, 0, key="second"))

    assert exc.value.resource_kind == "provider"
    assert exc.value.resource_id == clinic["providers"][0]
    assert exc.value.code == "provider_conflict"


def test_touching_reservations_do_not_conflict(coordinator, clinic):
    book(coordinator, clinic, 9, 0)
    assert book(coordinator, clinic, 9, 30).status == "confirmed"


def test_buffers_are_part_of_the_conflict_interval(coordinator, catalog):
    location_id = catalog.location()
    service_id = catalog.service(duration_min=30, buffer_before_min=5, buffer_after_min=10)
    provider = catalog.resource(location_id)
    catalog.window(provider, datetime(2025, 3, 3, 8, 0), datetime(2025, 3, 3, 12, 0))
    catalog.link(service_id, provider)
    clinic = {"location_id": location_id, "service_id": service_id, "providers": [provider]}

    first = book(coordinator, clinic, 9, 0)
    assert (first.conflict_start, first.conflict_end) == (datetime(2025, 3, 3, 8, 55), datetime(2025, 3, 3, 9, 40))

    with pytest.raises(ConflictException):
        book(coordinator, clinic, 9, 30)
    # 9:45 - 5 min before = 9:40, touching the first one
    assert book(coordinator, clinic, 9, 45).status == "confirmed"


def test_concurrent_commits_for_the_same_slot(coordinator, clinic, session_factory):
    attempts = 8

    def attempt(i):
        try:
            return coordinator.commit(slot_request(clinic, 9, 0, key=f"race-{i}")).reservation
        except ConflictException as e:
            return e

    with ThreadPoolExecutor(max_workers=attempts) as pool:
        outcomes = list(pool.map(attempt, range(attempts)))

    committed = [o for o in outcomes if not isinstance(o, Exception)]
    conflicts = [o for o in outcomes if isinstance(o, ConflictException)]
    assert len(committed) == 1
    assert len(conflicts) == attempts - 1
    assert count_reservations(session_factory) == 1


def test_concurrent_replays_of_one_key(coordinator, clinic, session_factory):
    with ThreadPoolExecutor(max_workers=6) as pool:
        results = list(pool.map(lambda _: coordinator.commit(slot_request(clinic, 9, 0, key="dup")), range(6)))

    assert len({r.reservation.id for r in results}) == 1
    assert sum(1 for r in results if not r.replayed) == 1
    assert count_reservations(session_factory) == 1


def test_stale_snapshot_is_rejected(coordinator, clinic):
    with pytest.raises(StaleSnapshotError) as exc:
        coordinator.commit(slot_request(clinic, 9, 0, fetched_at=NOW - timedelta(seconds=31)))
    assert exc.value.details["max_staleness_seconds"] == 30

    fresh = coordinator.commit(slot_request(clinic, 9, 0, fetched_at=NOW - timedelta(seconds=5)))
    assert fresh.reservation.status == "confirmed"


def test_replay_skips_the_freshness_check(coordinator, clinic):
    first = coordinator.commit(slot_request(clinic, 9, 0, key="k"))
    again = coordinator.commit(slot_request(clinic, 9, 0, key="k", fetched_at=NOW - timedelta(hours=1)))
    assert again.replayed and again.reservation.id == first.reservation.id


def test_room_taken_by_another_commit_is_a_room_conflict(coordinator, catalog):
    location_id = catalog.location()
    service_id = catalog.service(duration_min=30, requires_room=1)
    room = catalog.resource(location_id, kind="room")
    providers = []
    for _ in range(2):
        rid = catalog.resource(location_id)
        catalog.window(rid, datetime(2025, 3, 3, 9, 0), datetime(2025, 3, 3, 12, 0))
        catalog.link(service_id, rid)
        providers.append(rid)
    clinic = {"location_id": location_id, "service_id": service_id, "providers": providers}

    first = book(coordinator, clinic, 9, 0, resource_index=0)
    assert ("room", room) in [(b.role, b.resource_id) for b in first.bindings]

    with pytest.raises(ConflictException) as exc:
        book(coordinator, clinic, 9, 0, resource_index=1)
    assert exc.value.resource_kind == "room"
    assert exc.value.code == "room_conflict"


def test_pooled_equipment_units(coordinator, catalog):
    location_id = catalog.location()
    service_id = catalog.service(duration_min=30, equipment_type="monitor")
    monitors = catalog.resource(location_id, kind="equipment", resource_type="monitor", capacity=2)
    providers = []
    for _ in range(3):
        rid = catalog.resource(location_id)
        catalog.window(rid, datetime(2025, 3, 3, 9, 0), datetime(2025, 3, 3, 12, 0))
        catalog.link(service_id, rid)
        providers.append(rid)
    clinic = {"location_id": location_id, "service_id": service_id, "providers": providers}

    book(coordinator, clinic, 9, 0, resource_index=0)
    second = book(coordinator, clinic, 9, 0, resource_index=1)
    assert ("equipment", monitors) in [(b.role, b.resource_id) for b in second.bindings]

    with pytest.raises(ConflictException) as exc:
        book(coordinator, clinic, 9, 0, resource_index=2)
    assert exc.value.resource_kind == "equipment"


def test_auto_selection_picks_best_ranked_free_provider(coordinator, catalog):
    location_id = catalog.location()
    service_id = catalog.service()
    plain = catalog.resource(location_id)
    preferred = catalog.resource(location_id, ranking_weight=3.0)
    for rid in (plain, preferred):
        catalog.window(rid, datetime(2025, 3, 3, 9, 0), datetime(2025, 3, 3, 12, 0))
        catalog.link(service_id, rid)
    clinic = {"location_id": location_id, "service_id": service_id, "providers": [plain, preferred]}

    first = book(coordinator, clinic, 9, 0, key="a", primary_resource_id=None)
    second = book(coordinator, clinic, 9, 0, key="b", primary_resource_id=None)

    assert first.primary_resource_id == preferred
    assert second.primary_resource_id == plain
    with pytest.raises(ConflictException):
        book(coordinator, clinic, 9, 0, key="c", primary_resource_id=None)


def test_auto_selection_reports_the_collision_over_off_hours_providers(coordinator, catalog, clinic):
    p1 = clinic["providers"][1]
    catalog.window(p1, datetime(2025, 3, 3, 13, 0), datetime(2025, 3, 3, 14, 0))
    book(coordinator, clinic, 13, 0, resource_index=1)

    # the first-ranked provider is tried first and does not work at 13:00
    with pytest.raises(ConflictException) as exc:
        book(coordinator, clinic, 13, 0, key="auto", primary_resource_id=None)
    assert exc.value.code == "provider_conflict"
    assert exc.value.resource_id == p1

    with pytest.raises(ValidationException) as exc:
        book(coordinator, clinic, 15, 0, key="nobody", primary_resource_id=None)
    assert exc.value.code == "outside_working_hours"


def test_room_selection_reports_the_collision_over_closed_rooms(coordinator, catalog):
    location_id = catalog.location()
    service_id = catalog.service(duration_min=30, requires_room=1)
    closed = catalog.resource(location_id, kind="room")
    catalog.window(closed, datetime(2025, 3, 3, 9, 0), datetime(2025, 3, 3, 10, 0))
    open_room = catalog.resource(location_id, kind="room")
    providers = []
    for _ in range(2):
        rid = catalog.resource(location_id)
        catalog.window(rid, datetime(2025, 3, 3, 9, 0), datetime(2025, 3, 3, 17, 0))
        catalog.link(service_id, rid)
        providers.append(rid)
    clinic = {"location_id": location_id, "service_id": service_id, "providers": providers}

    first = book(coordinator, clinic, 13, 0, resource_index=0)
    assert ("room", open_room) in [(b.role, b.resource_id) for b in first.bindings]

    with pytest.raises(ConflictException) as exc:
        book(coordinator, clinic, 13, 0, resource_index=1)
    assert exc.value.code == "room_conflict"
    assert exc.value.resource_id == open_room


def test_rule_violation(coordinator, catalog, clinic):
    rule_id = catalog.rule("max_daily", {"limit": 1}, service_id=clinic["service_id"])
    book(coordinator, clinic, 9, 0)

    with pytest.raises(RuleViolationError) as exc:
        book(coordinator, clinic, 11, 0)

    assert exc.value.rule_id == rule_id
    assert exc.value.reason == "max_daily_reached:1/1"
    assert exc.value.status_code == 422


def test_service_lead_time(coordinator, catalog):
    location_id = catalog.location()
    service_id = catalog.service(lead_time_min=180)
    provider = catalog.resource(location_id)
    catalog.window(provider, datetime(2025, 3, 3, 9, 0), datetime(2025, 3, 3, 12, 0))
    catalog.link(service_id, provider)
    clinic = {"location_id": location_id, "service_id": service_id, "providers": [provider]}

    with pytest.raises(RuleViolationError) as exc:
        book(coordinator, clinic, 9, 30)
    assert exc.value.reason == "lead_time_not_met"
    assert book(coordinator, clinic, 10, 0).status == "confirmed"


def test_outside_working_hours(coordinator, clinic):
    with pytest.raises(ValidationException) as exc:
        book(coordinator, clinic, 12, 0)
    assert exc.value.code == "outside_working_hours"


def test_prevalidation(coordinator, clinic, catalog):
    request = slot_request(clinic, 9, 0)
    with pytest.raises(ValidationException) as exc:
        coordinator.commit(replace(request, end=request.start + timedelta(minutes=45)))
    assert exc.value.code == "duration_mismatch"

    with pytest.raises(NotFoundException):
        coordinator.commit(slot_request(clinic, 9, 0, primary_resource_id=999))

    room = catalog.resource(clinic["location_id"], kind="room")
    with pytest.raises(ValidationException) as exc:
        coordinator.commit(slot_request(clinic, 9, 0, primary_resource_id=room))
    assert exc.value.code == "resource_mismatch"

    unlinked = catalog.resource(clinic["location_id"])
    with pytest.raises(ValidationException) as exc:
        coordinator.commit(slot_request(clinic, 9, 0, primary_resource_id=unlinked))
    assert exc.value.code == "resource_not_eligible"


def test_commit_rejects_a_service_without_duration(coordinator, catalog, clinic, session_factory):
    service_id = catalog.service(duration_min=0)
    catalog.link(service_id, clinic["providers"][0])

    with pytest.raises(ValidationException) as exc:
        coordinator.commit(slot_request({**clinic, "service_id": service_id}, 9, 0))

    assert exc.value.code == "invalid_service_duration"
    assert count_reservations(session_factory) == 0


def test_room_and_equipment_ids_need_a_service_that_uses_them(coordinator, catalog, clinic, session_factory):
    room = catalog.resource(clinic["location_id"], kind="room")
    monitor = catalog.resource(clinic["location_id"], kind="equipment", resource_type="monitor")

    with pytest.raises(ValidationException) as exc:
        coordinator.commit(slot_request(clinic, 9, 0, room_id=room))
    assert exc.value.code == "room_not_required"

    with pytest.raises(ValidationException) as exc:
        coordinator.commit(slot_request(clinic, 9, 0, equipment_id=monitor))
    assert exc.value.code == "equipment_not_required"

    assert count_reservations(session_factory) == 0


# ── Transient store failures ─────────────────────────────────────────────


def locked_database():
    return OperationalError("INSERT INTO reservations", {}, Exception("database is locked"))


def test_store_failures_are_retried_then_reported_unavailable(coordinator, clinic, config, session_factory, monkeypatch):
    calls = []
    sleeps = []

    def always_locked(request, now):
        calls.append(request.idempotency_key)
        raise locked_database()

    monkeypatch.setattr(coordinator, "_commit_once", always_locked)
    monkeypatch.setattr(time, "sleep", sleeps.append)

    with pytest.raises(TransientInfraError) as exc:
        coordinator.commit(slot_request(clinic, 9, 0))

    assert exc.value.code == "store_unavailable"
    assert exc.value.status_code == 503
    assert exc.value.details["attempts"] == config.commit_max_retries + 1
    assert len(calls) == config.commit_max_retries + 1
    base = config.commit_retry_backoff_seconds
    assert sleeps == [base * 2 ** n for n in range(config.commit_max_retries)]
    assert count_reservations(session_factory) == 0
    assert outbox(session_factory) == []


def test_commit_succeeds_after_transient_failures(coordinator, clinic, session_factory, monkeypatch):
    commit_once = coordinator._commit_once
    failures = [locked_database(), locked_database()]

    def flaky(request, now):
        if failures:
            raise failures.pop()
        return commit_once(request, now)

    monkeypatch.setattr(coordinator, "_commit_once", flaky)
    monkeypatch.setattr(time, "sleep", lambda seconds: None)

    result = coordinator.commit(slot_request(clinic, 9, 0))

    assert result.reservation.status == "confirmed"
    assert count_reservations(session_factory) == 1
    assert [e[0] for e in outbox(session_factory)] == ["reservation.created"]


def test_slot_tokens_are_released(engine, config, clinic, fake_redis):
    coordinator = BookingCoordinator(engine, redis=fake_redis, config=config, clock=lambda: NOW)
    book(coordinator, clinic, 9, 0)
    with pytest.raises(ConflictException):
        book(coordinator, clinic, 9, 0, key="again")
    assert not [k for k in fake_redis.strings if k.startswith("slot_token:")]


def test_held_slot_token_does_not_block_commit(engine, config, clinic, fake_redis):
    blocker = SlotTokens(fake_redis, config)
    slot = slot_request(clinic, 9, 0)
    assert blocker.acquire(TENANT, [clinic["providers"][0]], Interval(slot.start, slot.end))

    coordinator = BookingCoordinator(engine, redis=fake_redis, config=config, clock=lambda: NOW)
    assert coordinator.commit(slot).reservation.status == "confirmed"
    blocker.release()


# ── Lifecycle ────────────────────────────────────────────────────────────


def test_cancel_frees_the_slot_and_bumps_version(coordinator, clinic, session_factory):
    reservation = book(coordinator, clinic, 9, 0)

    cancelled = coordinator.cancel(TENANT, reservation.id, reason="client request")

    assert cancelled.status == "cancelled"
    assert cancelled.version == 2
    assert cancelled.cancel_reason == "client request"
    assert book(coordinator, clinic, 9, 0, key="rebook").status == "confirmed"
    assert [e[0] for e in outbox(session_factory)][:2] == ["reservation.created", "reservation.cancelled"]


def test_invalid_transitions(coordinator, clinic):
    reservation = book(coordinator, clinic, 9, 0)
    coordinator.cancel(TENANT, reservation.id)

    with pytest.raises(InvalidTransitionError) as exc:
        coordinator.cancel(TENANT, reservation.id)
    assert exc.value.details == {"reservation_id": reservation.id, "from": "cancelled", "to": "cancelled"}

    with pytest.raises(InvalidTransitionError):
        coordinator.complete(TENANT, reservation.id)


def test_start_then_complete(coordinator, clinic):
    reservation = book(coordinator, clinic, 9, 0)

    started = coordinator.start(TENANT, reservation.id)
    completed = coordinator.complete(TENANT, reservation.id)

    assert started.status == "in_progress"
    assert completed.status == "completed"
    assert completed.version == 3
    with pytest.raises(InvalidTransitionError):
        coordinator.cancel(TENANT, reservation.id)


def test_no_show(coordinator, clinic):
    reservation = book(coordinator, clinic, 9, 0)
    assert coordinator.mark_no_show(TENANT, reservation.id).status == "no_show"


def test_transition_on_unknown_or_foreign_reservation(coordinator, clinic):
    reservation = book(coordinator, clinic, 9, 0)
    with pytest.raises(NotFoundException):
        coordinator.cancel(TENANT, 999)
    with pytest.raises(NotFoundException):
        coordinator.cancel(2, reservation.id)


def test_reschedule_is_cancel_plus_create(coordinator, clinic, session_factory):
    original = book(coordinator, clinic, 9, 0)

    result = coordinator.reschedule(TENANT, original.id, slot_request(clinic, 11, 0, key="moved"))

    moved = result.reservation
    old = coordinator.get_reservation(TENANT, original.id)
    assert old.status == "cancelled"
    assert old.cancel_reason == "rescheduled"
    assert old.version == 2
    assert moved.rescheduled_from_id == original.id
    assert moved.start == datetime(2025, 3, 3, 11, 0)

    types = [(e[0], e[1]) for e in outbox(session_factory)]
    assert types == [
        ("reservation.created", original.id),
        ("reservation.cancelled", original.id),
        ("reservation.rescheduled", moved.id),
    ]

    replay = coordinator.reschedule(TENANT, original.id, slot_request(clinic, 11, 0, key="moved"))
    assert replay.replayed and replay.reservation.id == moved.id


def test_reschedule_into_overlapping_own_slot(coordinator, clinic):
    original = book(coordinator, clinic, 9, 0)
    # shifting by 15 minutes overlaps only the reservation being replaced
    result = coordinator.reschedule(TENANT, original.id, slot_request(clinic, 9, 15, key="shift"))
    assert result.reservation.start == datetime(2025, 3, 3, 9, 15)


def test_failed_reschedule_keeps_the_original(coordinator, clinic):
    original = book(coordinator, clinic, 9, 0)
    book(coordinator, clinic, 11, 0, key="blocker")

    with pytest.raises(ConflictException):
        coordinator.reschedule(TENANT, original.id, slot_request(clinic, 11, 0, key="moved"))

    assert coordinator.get_reservation(TENANT, original.id).status == "confirmed"


def test_completion_checker(coordinator, clinic, config, engine):
    due = book(coordinator, clinic, 9, 0)
    later = book(coordinator, clinic, 11, 0)
    started = book(coordinator, clinic, 9, 30)
    coordinator.start(TENANT, started.id)

    completed = complete_due_reservations(coordinator, grace_minutes=15, now=datetime(2025, 3, 3, 10, 15))

    assert completed == 2
    assert coordinator.get_reservation(TENANT, due.id).status == "completed"
    assert coordinator.get_reservation(TENANT, started.id).status == "completed"
    assert coordinator.get_reservation(TENANT, later.id).status == "confirmed"
