# reservation_scheduler/crud/memory_store.py
"""
In-process ``ReservationStore``.

One re-entrant lock guards every table, so each method is atomic. Records are
copied on the way in and out; callers can never mutate stored state except
through the store's own operations.
"""

import logging
import threading
from datetime import date, datetime, time
from typing import Dict, List, Optional

from reservation_scheduler.core.exceptions import (
    DuplicateConflictError,
    NotFoundError,
    StaleStateError,
)
from reservation_scheduler.crud.store import ReservationStore, first_overlap
from reservation_scheduler.schemas.reservation import (
    Booking,
    BookingStatus,
    RequesterHistory,
    ReservationStatus,
    TemporaryReservation,
    WaitlistEntry,
    WaitlistStatus,
)

logger = logging.getLogger(__name__)


def _copy(record):
    return record.model_copy(deep=True)


class InMemoryReservationStore(ReservationStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._reservations: Dict[str, TemporaryReservation] = {}
        self._waitlist: Dict[str, WaitlistEntry] = {}
        self._bookings: Dict[str, Booking] = {}
        self._profiles: Dict[str, datetime] = {}

    # --- Temporary reservations ---

    def get_active_by_resource(self, resource_id, on):
        with self._lock:
            return [
                _copy(r)
                for r in self._reservations.values()
                if r.resource_id == resource_id
                and r.date == on
                and r.status == ReservationStatus.ACTIVE
            ]

    def insert(self, reservation: TemporaryReservation) -> str:
        with self._lock:
            if reservation.id in self._reservations:
                raise DuplicateConflictError(
                    f"Reservation {reservation.id} already exists"
                )
            if (
                reservation.resource_id is not None
                and reservation.status == ReservationStatus.ACTIVE
            ):
                blocker = first_overlap(
                    reservation,
                    self.get_active_by_resource(
                        reservation.resource_id, reservation.date
                    )
                    + self.get_bookings_by_resource(
                        reservation.resource_id, reservation.date
                    ),
                )
                if blocker is not None:
                    raise DuplicateConflictError(
                        f"Resource {reservation.resource_id} is already taken for "
                        f"{reservation.interval} by {blocker.id}"
                    )
            self._reservations[reservation.id] = _copy(reservation)
            return reservation.id

    def update_state(
        self, reservation_id, from_state, to_state, extra=None, *, expect=None
    ):
        with self._lock:
            current = self._reservations.get(reservation_id)
            if current is None:
                raise NotFoundError("Reservation", reservation_id)
            if current.status != from_state:
                raise StaleStateError(reservation_id, ReservationStatus(from_state).value)
            for field, value in (expect or {}).items():
                if getattr(current, field) != value:
                    raise StaleStateError(
                        reservation_id, ReservationStatus(from_state).value
                    )
            changes = dict(extra or {})
            changes["status"] = ReservationStatus(to_state)
            updated = current.model_copy(update=changes)
            self._reservations[reservation_id] = updated
            return _copy(updated)

    def convert_reservation(self, reservation_id, extra=None, booking=None):
        with self._lock:
            if booking is not None and booking.id in self._bookings:
                raise DuplicateConflictError(f"Booking {booking.id} already exists")
            converted = self.update_state(
                reservation_id,
                ReservationStatus.ACTIVE,
                ReservationStatus.CONVERTED,
                extra,
            )
            if booking is not None:
                self._bookings[booking.id] = _copy(booking)
            return converted

    def list_due_for_expiration(self, now):
        with self._lock:
            due = [
                _copy(r)
                for r in self._reservations.values()
                if r.status == ReservationStatus.ACTIVE and r.deadline <= now
            ]
        return sorted(due, key=lambda r: (r.deadline, r.id))

    def get_reservation(self, reservation_id):
        with self._lock:
            found = self._reservations.get(reservation_id)
            return _copy(found) if found else None

    def list_reservations(
        self, *, requester_id=None, resource_id=None, status=None, on=None
    ):
        with self._lock:
            rows = [
                _copy(r)
                for r in self._reservations.values()
                if (requester_id is None or r.requester_id == requester_id)
                and (resource_id is None or r.resource_id == resource_id)
                and (status is None or r.status == status)
                and (on is None or r.date == on)
            ]
        return sorted(rows, key=lambda r: (r.created_at, r.id))

    def list_expiring_soon(self, now, horizon):
        with self._lock:
            rows = [
                _copy(r)
                for r in self._reservations.values()
                if r.status == ReservationStatus.ACTIVE
                and not r.expiring_notice_sent
                and now < r.deadline <= horizon
            ]
        return sorted(rows, key=lambda r: (r.deadline, r.id))

    def claim_expiring_notice(self, reservation_id):
        with self._lock:
            current = self._reservations.get(reservation_id)
            if (
                current is None
                or current.status != ReservationStatus.ACTIVE
                or current.expiring_notice_sent
            ):
                return False
            self._reservations[reservation_id] = current.model_copy(
                update={"expiring_notice_sent": True}
            )
            return True

    def release_expiring_notice(self, reservation_id):
        with self._lock:
            current = self._reservations.get(reservation_id)
            if current is not None:
                self._reservations[reservation_id] = current.model_copy(
                    update={"expiring_notice_sent": False}
                )

    # --- Waitlist ---

    def insert_waitlist_entry(self, entry):
        with self._lock:
            if entry.id in self._waitlist:
                raise DuplicateConflictError(f"Waitlist entry {entry.id} already exists")
            self._waitlist[entry.id] = _copy(entry)
            return entry.id

    def get_waitlist_entry(self, entry_id):
        with self._lock:
            found = self._waitlist.get(entry_id)
            return _copy(found) if found else None

    def list_waitlist(
        self,
        resource_id: Optional[str],
        on: date,
        start: time,
        end: time,
        status: Optional[WaitlistStatus] = WaitlistStatus.WAITING,
    ) -> List[WaitlistEntry]:
        with self._lock:
            rows = [
                _copy(e)
                for e in self._waitlist.values()
                if e.resource_id == resource_id
                and e.date == on
                and e.start_time == start
                and e.end_time == end
                and (status is None or e.status == status)
            ]
        return sorted(rows, key=lambda e: (e.created_at, e.id))

    def list_waitlist_entries(
        self, *, requester_id=None, resource_id=None, status=None, on=None
    ):
        with self._lock:
            rows = [
                _copy(e)
                for e in self._waitlist.values()
                if (requester_id is None or e.requester_id == requester_id)
                and (resource_id is None or e.resource_id == resource_id)
                and (status is None or e.status == status)
                and (on is None or e.date == on)
            ]
        return sorted(rows, key=lambda e: (e.created_at, e.id))

    def update_waitlist_state(self, entry_id, from_state, to_state, extra=None):
        with self._lock:
            current = self._waitlist.get(entry_id)
            if current is None:
                raise NotFoundError("Waitlist entry", entry_id)
            if current.status != from_state:
                raise StaleStateError(entry_id, WaitlistStatus(from_state).value)
            changes = dict(extra or {})
            changes["status"] = WaitlistStatus(to_state)
            updated = current.model_copy(update=changes)
            self._waitlist[entry_id] = updated
            return _copy(updated)

    def list_notified_before(self, cutoff):
        with self._lock:
            rows = [
                _copy(e)
                for e in self._waitlist.values()
                if e.status == WaitlistStatus.NOTIFIED
                and e.notified_at is not None
                and e.notified_at <= cutoff
            ]
        return sorted(rows, key=lambda e: (e.notified_at, e.id))

    # --- Firm bookings ---

    def insert_booking(self, booking):
        with self._lock:
            if booking.id in self._bookings:
                raise DuplicateConflictError(f"Booking {booking.id} already exists")
            self._bookings[booking.id] = _copy(booking)
            logger.debug(f"Booking {booking.id} recorded for {booking.resource_id}")
            return booking.id

    def get_bookings_by_resource(self, resource_id, on):
        with self._lock:
            return [
                _copy(b)
                for b in self._bookings.values()
                if b.resource_id == resource_id
                and b.date == on
                and b.status == BookingStatus.CONFIRMED
            ]

    # --- Requester history ---

    def requester_history(self, requester_id, since=None):
        with self._lock:
            holds = [
                r
                for r in self._reservations.values()
                if r.requester_id == requester_id
                and (since is None or r.created_at >= since)
            ]
        conversions = sum(1 for r in holds if r.status == ReservationStatus.CONVERTED)
        return RequesterHistory(
            requester_id=requester_id, holds=len(holds), conversions=conversions
        )

    def get_requester_joined_at(self, requester_id):
        with self._lock:
            return self._profiles.get(requester_id)

    def upsert_requester_profile(self, requester_id, joined_at):
        with self._lock:
            self._profiles[requester_id] = joined_at
