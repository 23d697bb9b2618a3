# tests/crud/test_reservation_store.py
from datetime import time, timedelta

import pytest

from reservation_scheduler.core.exceptions import (
    DuplicateConflictError,
    NotFoundError,
    StaleStateError,
)
from reservation_scheduler.schemas.reservation import (
    Booking,
    BookingStatus,
    ReservationStatus,
    TemporaryReservation,
    WaitlistEntry,
    WaitlistStatus,
)
from tests.utils.reservation import SLOT, START


def make_hold(id_, resource_id="V", start=14, end=18, requester_id="R1", **overrides):
    values = dict(
        id=id_,
        requester_id=requester_id,
        resource_id=resource_id,
        date=SLOT.date,
        start_time=time(start),
        end_time=time(end),
        created_at=START,
        deadline=START + timedelta(hours=48),
        ttl_seconds=48 * 3600,
    )
    values.update(overrides)
    return TemporaryReservation(**values)


def make_booking(id_, resource_id="V", **overrides):
    values = dict(
        id=id_,
        resource_id=resource_id,
        date=SLOT.date,
        start_time=SLOT.start,
        end_time=SLOT.end,
        reference=f"REF-{id_}",
        created_at=START,
    )
    values.update(overrides)
    return Booking(**values)


def make_entry(id_, resource_id="V", requester_id="R2", **overrides):
    values = dict(
        id=id_,
        requester_id=requester_id,
        resource_id=resource_id,
        date=SLOT.date,
        start_time=SLOT.start,
        end_time=SLOT.end,
        created_at=START,
    )
    values.update(overrides)
    return WaitlistEntry(**values)


class TestReservations:
    def test_insert_and_read_back(self, store):
        assert store.insert(make_hold("rsv_1", notes="vip")) == "rsv_1"
        stored = store.get_reservation("rsv_1")
        assert stored.status == ReservationStatus.ACTIVE
        assert stored.deadline == START + timedelta(hours=48)
        assert stored.deadline.tzinfo is not None
        assert stored.start_time == time(14)
        assert stored.notes == "vip"
        assert store.get_reservation("rsv_missing") is None

    def test_insert_guards_against_overlapping_active_holds(self, store):
        store.insert(make_hold("rsv_1"))
        with pytest.raises(DuplicateConflictError):
            store.insert(make_hold("rsv_2", start=17, end=19))
        # Touching, other resource and resource-less are fine
        store.insert(make_hold("rsv_3", start=18, end=19))
        store.insert(make_hold("rsv_4", resource_id="W"))
        store.insert(make_hold("rsv_5", resource_id=None))
        store.insert(make_hold("rsv_6", resource_id=None))

    def test_insert_guards_against_confirmed_bookings(self, store):
        store.insert_booking(
            Booking(
                id="bk_1",
                resource_id="V",
                date=SLOT.date,
                start_time=time(9),
                end_time=time(15),
                reference="BK-1",
                created_at=START,
            )
        )
        with pytest.raises(DuplicateConflictError):
            store.insert(make_hold("rsv_1"))

    def test_get_active_by_resource(self, store):
        store.insert(make_hold("rsv_1"))
        store.insert(make_hold("rsv_2", start=8, end=9))
        store.update_state("rsv_2", ReservationStatus.ACTIVE, ReservationStatus.RELEASED)
        store.insert(make_hold("rsv_3", resource_id="W"))
        assert [r.id for r in store.get_active_by_resource("V", SLOT.date)] == ["rsv_1"]

    def test_update_state_is_compare_and_swap(self, store):
        store.insert(make_hold("rsv_1"))
        updated = store.update_state(
            "rsv_1",
            ReservationStatus.ACTIVE,
            ReservationStatus.CONVERTED,
            {"booking_ref": "BK-9", "converted_at": START},
        )
        assert updated.status == ReservationStatus.CONVERTED
        assert updated.booking_ref == "BK-9"

        with pytest.raises(StaleStateError):
            store.update_state("rsv_1", ReservationStatus.ACTIVE, ReservationStatus.RELEASED)
        with pytest.raises(NotFoundError):
            store.update_state("rsv_x", ReservationStatus.ACTIVE, ReservationStatus.RELEASED)

    def test_update_state_expect_guard(self, store):
        store.insert(make_hold("rsv_1"))
        store.update_state(
            "rsv_1",
            ReservationStatus.ACTIVE,
            ReservationStatus.ACTIVE,
            {"extension_count": 1},
            expect={"extension_count": 0},
        )
        with pytest.raises(StaleStateError):
            store.update_state(
                "rsv_1",
                ReservationStatus.ACTIVE,
                ReservationStatus.ACTIVE,
                {"extension_count": 1},
                expect={"extension_count": 0},
            )

    def test_list_due_for_expiration(self, store):
        store.insert(make_hold("rsv_late", deadline=START + timedelta(hours=2)))
        store.insert(
            make_hold("rsv_early", resource_id="W", deadline=START + timedelta(hours=1))
        )
        store.insert(make_hold("rsv_future", resource_id="X"))
        due = store.list_due_for_expiration(START + timedelta(hours=2))
        assert [r.id for r in due] == ["rsv_early", "rsv_late"]

    def test_expiring_notice_marker(self, store):
        store.insert(make_hold("rsv_1", deadline=START + timedelta(hours=5)))
        soon = store.list_expiring_soon(START, START + timedelta(hours=6))
        assert [r.id for r in soon] == ["rsv_1"]

        assert store.claim_expiring_notice("rsv_1") is True
        assert store.claim_expiring_notice("rsv_1") is False
        assert store.list_expiring_soon(START, START + timedelta(hours=6)) == []

        store.release_expiring_notice("rsv_1")
        assert store.claim_expiring_notice("rsv_1") is True

    def test_list_reservations_filters(self, store):
        store.insert(make_hold("rsv_1"))
        store.insert(make_hold("rsv_2", resource_id="W", requester_id="R2"))
        store.update_state("rsv_2", ReservationStatus.ACTIVE, ReservationStatus.RELEASED)

        assert [r.id for r in store.list_reservations()] == ["rsv_1", "rsv_2"]
        assert [r.id for r in store.list_reservations(requester_id="R2")] == ["rsv_2"]
        assert [
            r.id for r in store.list_reservations(status=ReservationStatus.ACTIVE)
        ] == ["rsv_1"]
        assert [r.id for r in store.list_reservations(resource_id="W")] == ["rsv_2"]
        assert store.list_reservations(on=SLOT.date + timedelta(days=1)) == []

    def test_convert_records_booking_in_same_write(self, store):
        store.insert(make_hold("rsv_1"))
        converted = store.convert_reservation(
            "rsv_1", {"booking_ref": "BK-1", "converted_at": START}, make_booking("bk_1")
        )
        assert converted.status == ReservationStatus.CONVERTED
        assert converted.booking_ref == "BK-1"
        assert [b.id for b in store.get_bookings_by_resource("V", SLOT.date)] == ["bk_1"]

        with pytest.raises(StaleStateError):
            store.convert_reservation("rsv_1", {}, make_booking("bk_2"))
        assert [b.id for b in store.get_bookings_by_resource("V", SLOT.date)] == ["bk_1"]

    def test_failed_booking_write_rolls_back_conversion(self, store):
        store.insert_booking(make_booking("bk_taken", resource_id="ELSEWHERE"))
        store.insert(make_hold("rsv_1"))

        with pytest.raises(DuplicateConflictError):
            store.convert_reservation(
                "rsv_1", {"booking_ref": "BK-1"}, make_booking("bk_taken")
            )

        current = store.get_reservation("rsv_1")
        assert current.status == ReservationStatus.ACTIVE
        assert current.booking_ref is None
        assert [r.id for r in store.get_active_by_resource("V", SLOT.date)] == ["rsv_1"]
        with pytest.raises(DuplicateConflictError):
            store.insert(make_hold("rsv_2"))

    def test_resource_less_conversion_needs_no_booking(self, store):
        store.insert(make_hold("rsv_1", resource_id=None))
        converted = store.convert_reservation("rsv_1", {"booking_ref": "BK-1"})
        assert converted.status == ReservationStatus.CONVERTED


class TestWaitlist:
    def test_list_waitlist_matches_exact_bucket(self, store):
        store.insert_waitlist_entry(make_entry("wl_1"))
        store.insert_waitlist_entry(make_entry("wl_2", resource_id=None))
        store.insert_waitlist_entry(make_entry("wl_3", start_time=time(15)))
        store.insert_waitlist_entry(make_entry("wl_4", resource_id="W"))

        exact = store.list_waitlist("V", SLOT.date, SLOT.start, SLOT.end)
        assert [e.id for e in exact] == ["wl_1"]
        wildcard = store.list_waitlist(None, SLOT.date, SLOT.start, SLOT.end)
        assert [e.id for e in wildcard] == ["wl_2"]

    def test_list_waitlist_entries_filters(self, store):
        store.insert_waitlist_entry(make_entry("wl_1"))
        store.insert_waitlist_entry(
            make_entry("wl_2", resource_id="W", created_at=START + timedelta(minutes=1))
        )
        store.insert_waitlist_entry(
            make_entry(
                "wl_3",
                requester_id="R3",
                date=SLOT.date + timedelta(days=1),
                status=WaitlistStatus.WITHDRAWN,
                created_at=START + timedelta(minutes=2),
            )
        )

        assert [e.id for e in store.list_waitlist_entries()] == ["wl_1", "wl_2", "wl_3"]
        assert [e.id for e in store.list_waitlist_entries(resource_id="W")] == ["wl_2"]
        assert [e.id for e in store.list_waitlist_entries(requester_id="R3")] == ["wl_3"]
        assert [
            e.id for e in store.list_waitlist_entries(status=WaitlistStatus.WAITING)
        ] == ["wl_1", "wl_2"]
        assert [e.id for e in store.list_waitlist_entries(on=SLOT.date)] == ["wl_1", "wl_2"]

    def test_update_waitlist_state(self, store):
        store.insert_waitlist_entry(make_entry("wl_1"))
        updated = store.update_waitlist_state(
            "wl_1",
            WaitlistStatus.WAITING,
            WaitlistStatus.NOTIFIED,
            {"notified": True, "notified_at": START},
        )
        assert updated.status == WaitlistStatus.NOTIFIED
        assert updated.notified_at == START
        assert store.list_waitlist("V", SLOT.date, SLOT.start, SLOT.end) == []

        with pytest.raises(StaleStateError):
            store.update_waitlist_state(
                "wl_1", WaitlistStatus.WAITING, WaitlistStatus.NOTIFIED
            )
        with pytest.raises(NotFoundError):
            store.update_waitlist_state(
                "wl_x", WaitlistStatus.WAITING, WaitlistStatus.NOTIFIED
            )

    def test_list_notified_before(self, store):
        store.insert_waitlist_entry(
            make_entry("wl_old", status=WaitlistStatus.NOTIFIED, notified_at=START)
        )
        store.insert_waitlist_entry(
            make_entry(
                "wl_new",
                status=WaitlistStatus.NOTIFIED,
                notified_at=START + timedelta(hours=5),
            )
        )
        store.insert_waitlist_entry(make_entry("wl_waiting"))
        rows = store.list_notified_before(START + timedelta(hours=1))
        assert [e.id for e in rows] == ["wl_old"]


class TestBookingsAndHistory:
    def test_duplicate_booking_id_is_rejected(self, store):
        store.insert_booking(make_booking("bk_1"))
        with pytest.raises(DuplicateConflictError):
            store.insert_booking(make_booking("bk_1", resource_id="W"))

    def test_cancelled_bookings_do_not_block(self, store):
        store.insert_booking(
            Booking(
                id="bk_1",
                resource_id="V",
                date=SLOT.date,
                start_time=SLOT.start,
                end_time=SLOT.end,
                reference="BK-1",
                status=BookingStatus.CANCELLED,
                created_at=START,
            )
        )
        assert store.get_bookings_by_resource("V", SLOT.date) == []
        store.insert(make_hold("rsv_1"))

    def test_requester_history(self, store):
        store.insert(make_hold("rsv_1"))
        store.insert(make_hold("rsv_2", resource_id="W"))
        store.insert(
            make_hold("rsv_old", resource_id="X", created_at=START - timedelta(days=60))
        )
        store.update_state("rsv_1", ReservationStatus.ACTIVE, ReservationStatus.CONVERTED)

        history = store.requester_history("R1")
        assert (history.holds, history.conversions) == (3, 1)

        recent = store.requester_history("R1", since=START - timedelta(days=30))
        assert (recent.holds, recent.conversions) == (2, 1)
        assert recent.conversion_rate == 0.5

        nobody = store.requester_history("ghost")
        assert (nobody.holds, nobody.conversions, nobody.conversion_rate) == (0, 0, 0.0)

    def test_requester_profile_upsert(self, store):
        assert store.get_requester_joined_at("R1") is None
        store.upsert_requester_profile("R1", START)
        store.upsert_requester_profile("R1", START - timedelta(days=10))
        assert store.get_requester_joined_at("R1") == START - timedelta(days=10)
