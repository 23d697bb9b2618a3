# tests/services/test_reservation_lifecycle.py
import threading
import uuid
from datetime import time, timedelta

import pytest

from reservation_scheduler.core.exceptions import (
    ConflictError,
    DuplicateConflictError,
    InvalidStateError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from reservation_scheduler.crud.memory_store import InMemoryReservationStore
from reservation_scheduler.schemas.reservation import (
    Booking,
    ReservationStatus,
    WaitlistStatus,
)
from reservation_scheduler.services.priority_queue import PriorityQueueEngine
from reservation_scheduler.services import reservation_lifecycle
from reservation_scheduler.services.reservation_lifecycle import (
    ReservationLifecycleManager,
    append_note,
)
from reservation_scheduler.utils.intervals import Interval
from reservation_scheduler.utils.notifications import RecordingNotificationDispatcher
from tests.utils.reservation import SLOT, START, slot

TERMINAL = [ReservationStatus.CONVERTED, ReservationStatus.RELEASED, ReservationStatus.EXPIRED]


def join(queue, requester_id, resource_id="V", interval=SLOT):
    return queue.join(requester_id, resource_id, interval.date, interval.start, interval.end)


def finish(lifecycle, clock, reservation, state):
    """Drive a hold into the given terminal state."""
    if state == ReservationStatus.CONVERTED:
        return lifecycle.convert(reservation.id, "BK-1")
    if state == ReservationStatus.RELEASED:
        return lifecycle.release(reservation.id)
    clock.advance(hours=49)
    return lifecycle.expire(reservation.id).reservation


# --- request_hold ---


def test_request_hold_creates_active_hold_with_default_ttl(lifecycle, clock):
    hold = lifecycle.request_hold("R1", "V", SLOT, estimated_value=1500.0, notes="corporate")
    assert hold.status == ReservationStatus.ACTIVE
    assert hold.id.startswith("rsv_")
    assert hold.created_at == START
    assert hold.deadline == START + timedelta(hours=48)
    assert hold.ttl_seconds == 48 * 3600
    assert hold.estimated_value == 1500.0
    assert hold.notes == "corporate"


def test_request_hold_with_custom_ttl(lifecycle):
    hold = lifecycle.request_hold("R1", "V", SLOT, ttl=timedelta(hours=2))
    assert hold.deadline == START + timedelta(hours=2)


def test_request_hold_rejects_bad_input(lifecycle):
    with pytest.raises(ValidationError):
        lifecycle.request_hold("", "V", SLOT)
    with pytest.raises(ValidationError):
        lifecycle.request_hold("R1", "V", Interval(SLOT.date, time(18), time(14)))
    with pytest.raises(ValidationError):
        lifecycle.request_hold("R1", "V", SLOT, ttl=timedelta(0))
    assert lifecycle.list_reservations() == []


def test_overlapping_hold_on_same_resource_conflicts(lifecycle):
    first = lifecycle.request_hold("R1", "V", SLOT)
    with pytest.raises(ConflictError) as exc_info:
        lifecycle.request_hold("R2", "V", slot(start=17, end=20))
    assert exc_info.value.holder_ids == ["R1"]
    assert [r.id for r in exc_info.value.report.reservations] == [first.id]


def test_no_conflict_across_resources_or_for_resource_less_holds(lifecycle):
    lifecycle.request_hold("R1", "V", SLOT)
    lifecycle.request_hold("R2", "W", SLOT)
    lifecycle.request_hold("R3", None, SLOT)
    lifecycle.request_hold("R4", None, SLOT)
    lifecycle.request_hold("R5", "V", slot(start=18, end=20))
    assert len(lifecycle.list_reservations()) == 5


def test_concurrent_requests_for_same_slot_admit_one():
    store = InMemoryReservationStore()
    lifecycle = ReservationLifecycleManager(store, dispatcher=RecordingNotificationDispatcher())
    barrier = threading.Barrier(10)
    successes, conflicts = [], []

    def attempt(i):
        barrier.wait()
        try:
            successes.append(lifecycle.request_hold(f"R{i}", "V", slot(start=14 + i % 3, end=19)))
        except ConflictError:
            conflicts.append(i)

    threads = [threading.Thread(target=attempt, args=(i,)) for i in range(10)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len(successes) == 1
    assert len(conflicts) == 9
    assert len(store.get_active_by_resource("V", SLOT.date)) == 1


def test_managers_without_shared_locks_still_admit_one(shared_store, clock):
    # Two processes on one database: nothing but the store serializes them
    managers = [
        ReservationLifecycleManager(
            shared_store, dispatcher=RecordingNotificationDispatcher(), clock=clock
        )
        for _ in range(2)
    ]
    assert managers[0].locks is not managers[1].locks

    for round_ in range(20):
        resource_id = f"V{round_}"
        barrier = threading.Barrier(2)
        outcomes = []
        failures = []

        def attempt(i, manager):
            barrier.wait()
            try:
                manager.request_hold(f"R{i}", resource_id, SLOT)
                outcomes.append("held")
            except ConflictError:
                outcomes.append("conflict")
            except Exception as e:
                failures.append(e)

        threads = [
            threading.Thread(target=attempt, args=(i, manager))
            for i, manager in enumerate(managers)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert failures == []
        assert sorted(outcomes) == ["conflict", "held"]
        assert len(shared_store.get_active_by_resource(resource_id, SLOT.date)) == 1


# --- extend ---


def test_extend_pushes_deadline_by_ttl_up_to_cap(lifecycle, clock):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    deadlines = [hold.deadline]
    for _ in range(2):
        clock.advance(hours=1)
        hold = lifecycle.extend(hold.id)
        assert hold.status == ReservationStatus.ACTIVE
        deadlines.append(hold.deadline)

    assert deadlines == sorted(deadlines)
    assert hold.deadline == START + timedelta(hours=48 * 3)
    assert hold.extension_count == 2

    with pytest.raises(InvalidStateError):
        lifecycle.extend(hold.id)
    assert lifecycle.get(hold.id).deadline == deadlines[-1]


def test_extend_resets_expiring_notice(lifecycle, store):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    assert store.claim_expiring_notice(hold.id)
    assert lifecycle.extend(hold.id).expiring_notice_sent is False


def test_extend_after_deadline_expires_the_hold(lifecycle, queue, clock):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    waiting = join(queue, "R2")
    clock.advance(hours=48)

    with pytest.raises(InvalidStateError):
        lifecycle.extend(hold.id)
    assert lifecycle.get(hold.id).status == ReservationStatus.EXPIRED
    assert queue.get(waiting.id).status == WaitlistStatus.NOTIFIED


# --- convert ---


def test_convert_records_booking_and_keeps_slot_blocked(lifecycle, store, dispatcher):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    converted = lifecycle.convert(hold.id, "CONTRACT-42")
    assert converted.status == ReservationStatus.CONVERTED
    assert converted.booking_ref == "CONTRACT-42"
    assert converted.converted_at == START
    assert "Converted to booking CONTRACT-42" in converted.notes

    bookings = store.get_bookings_by_resource("V", SLOT.date)
    assert [b.reference for b in bookings] == ["CONTRACT-42"]
    assert bookings[0].source_reservation_id == hold.id

    with pytest.raises(ConflictError) as exc_info:
        lifecycle.request_hold("R2", "V", SLOT)
    assert exc_info.value.report.bookings[0].reference == "CONTRACT-42"

    events = dispatcher.of_type("reservation.converted")
    assert [e.reservation_id for e in events] == [hold.id]


def test_convert_does_not_promote_waitlist(lifecycle, queue):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    waiting = join(queue, "R2")
    lifecycle.convert(hold.id, "BK-1")
    assert queue.get(waiting.id).status == WaitlistStatus.WAITING


def test_convert_requires_booking_ref(lifecycle):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    with pytest.raises(ValidationError):
        lifecycle.convert(hold.id, "")


def test_failed_booking_write_keeps_hold_active(lifecycle, store, monkeypatch):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    fixed = uuid.UUID(int=7)
    # Take the booking id the conversion is about to use
    store.insert_booking(
        Booking(
            id=f"bk_{fixed.hex[:12]}",
            resource_id="ELSEWHERE",
            date=SLOT.date,
            start_time=SLOT.start,
            end_time=SLOT.end,
            reference="OTHER",
            created_at=START,
        )
    )
    monkeypatch.setattr(reservation_lifecycle.uuid, "uuid4", lambda: fixed)

    with pytest.raises(DuplicateConflictError):
        lifecycle.convert(hold.id, "CONTRACT-42")

    current = lifecycle.get(hold.id)
    assert current.status == ReservationStatus.ACTIVE
    assert current.booking_ref is None
    assert store.get_bookings_by_resource("V", SLOT.date) == []
    with pytest.raises(ConflictError):
        lifecycle.request_hold("R2", "V", SLOT)


# --- release ---


def test_release_promotes_top_waiting_entry(lifecycle, queue, clock):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    first = join(queue, "R2")
    clock.advance(minutes=5)
    second = join(queue, "R3")

    released = lifecycle.release(hold.id, reason="client postponed")
    assert released.status == ReservationStatus.RELEASED
    assert released.release_reason == "client postponed"
    assert "Released: client postponed" in released.notes

    assert queue.get(first.id).status == WaitlistStatus.NOTIFIED
    assert queue.get(second.id).status == WaitlistStatus.WAITING


def test_unknown_reservation(lifecycle):
    with pytest.raises(NotFoundError):
        lifecycle.release("rsv_missing")
    with pytest.raises(NotFoundError):
        lifecycle.get("rsv_missing")


# --- state machine closure ---


@pytest.mark.parametrize("state", TERMINAL)
def test_terminal_states_reject_every_transition(lifecycle, clock, state):
    hold = finish(lifecycle, clock, lifecycle.request_hold("R1", "V", SLOT), state)
    assert hold.status == state

    for action in (
        lambda: lifecycle.extend(hold.id),
        lambda: lifecycle.convert(hold.id, "BK-2"),
        lambda: lifecycle.release(hold.id),
    ):
        with pytest.raises(InvalidStateError) as exc_info:
            action()
        assert exc_info.value.current_state == state.value

    # Expiring a finished hold is a no-op, not an error
    outcome = lifecycle.expire(hold.id)
    assert outcome.expired is False
    assert lifecycle.get(hold.id).status == state


# --- expire ---


def test_expire_before_deadline_is_a_no_op(lifecycle):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    outcome = lifecycle.expire(hold.id)
    assert outcome.expired is False
    assert outcome.reservation.status == ReservationStatus.ACTIVE


def test_expire_emits_event_and_promotes(lifecycle, queue, dispatcher, clock):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    waiting = join(queue, "R2")
    clock.advance(hours=48)

    outcome = lifecycle.expire(hold.id)
    assert outcome.expired is True
    assert outcome.reservation.status == ReservationStatus.EXPIRED
    assert outcome.reservation.expired_at == clock.now()
    assert outcome.promoted_entry.id == waiting.id
    assert outcome.errors == []

    expired_events = dispatcher.of_type("reservation.expired")
    assert [e.reservation_id for e in expired_events] == [hold.id]
    assert expired_events[0].interval.start_time == SLOT.start


# --- claim ---


def test_claim_turns_promotion_into_hold(lifecycle, queue, store):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    entry = join(queue, "R2")
    lifecycle.release(hold.id)

    claimed = lifecycle.claim(entry.id)
    assert claimed.requester_id == "R2"
    assert claimed.resource_id == "V"
    assert claimed.status == ReservationStatus.ACTIVE

    entry = queue.get(entry.id)
    assert entry.status == WaitlistStatus.PROMOTED
    assert entry.reservation_id == claimed.id


def test_wildcard_claim_uses_offered_resource(lifecycle, queue):
    hold = lifecycle.request_hold("R1", "W", SLOT)
    entry = join(queue, "R2", resource_id=None)
    lifecycle.release(hold.id)
    assert lifecycle.claim(entry.id).resource_id == "W"


def test_claim_requires_notified_entry(lifecycle, queue):
    entry = join(queue, "R2")
    with pytest.raises(InvalidStateError):
        lifecycle.claim(entry.id)
    with pytest.raises(NotFoundError):
        lifecycle.claim("wl_missing")


def test_claim_after_grace_window_fails(lifecycle, queue, clock):
    hold = lifecycle.request_hold("R1", "V", SLOT)
    entry = join(queue, "R2")
    lifecycle.release(hold.id)
    clock.advance(hours=24)
    with pytest.raises(InvalidStateError):
        lifecycle.claim(entry.id)


# --- concurrency guard ---


def test_stale_state_is_retried_once(store, queue, dispatcher, clock):
    lifecycle = ReservationLifecycleManager(store, queue, dispatcher, clock)
    hold = lifecycle.request_hold("R1", "V", SLOT)

    real_update = store.update_state
    calls = []

    def flaky_update(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise StaleStateError(hold.id, "active")
        return real_update(*args, **kwargs)

    store.update_state = flaky_update
    released = lifecycle.release(hold.id)
    assert released.status == ReservationStatus.RELEASED
    assert len(calls) == 2


def test_stale_state_twice_is_surfaced(store, queue, dispatcher, clock):
    lifecycle = ReservationLifecycleManager(store, queue, dispatcher, clock)
    hold = lifecycle.request_hold("R1", "V", SLOT)

    def always_stale(*args, **kwargs):
        raise StaleStateError(hold.id, "active")

    store.update_state = always_stale
    with pytest.raises(StaleStateError):
        lifecycle.release(hold.id)


# --- reads ---


def test_statistics(lifecycle, clock):
    a = lifecycle.request_hold("R1", "V", SLOT, estimated_value=1000)
    b = lifecycle.request_hold("R1", "W", SLOT, estimated_value=500, ttl=timedelta(hours=10))
    lifecycle.request_hold("R2", "X", SLOT, estimated_value=250)
    lifecycle.convert(a.id, "BK-1")

    stats = lifecycle.statistics()
    assert stats.total == 3
    assert stats.by_status["converted"] == 1
    assert stats.by_status["active"] == 2
    assert stats.by_status["expired"] == 0
    assert stats.total_estimated_value == 1750
    assert stats.expiring_within_24h == 1  # only the 10h hold
    assert stats.conversion_rate == 33

    assert lifecycle.statistics(requester_id="R1").conversion_rate == 50
    assert b.id in [r.id for r in lifecycle.list_reservations(requester_id="R1")]


def test_audit_notes_accumulate():
    moment = START
    notes = append_note(None, moment, "Extended")
    notes = append_note(notes, moment, "Released")
    assert notes.splitlines() == ["[2024-05-30 09:00] Extended", "[2024-05-30 09:00] Released"]
