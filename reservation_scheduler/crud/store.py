# reservation_scheduler/crud/store.py
"""
Storage contract shared by every component.

The store is the only shared mutable state. Every state transition goes
through a compare-and-swap on the record's current status: ``update_state``
and ``update_waitlist_state`` raise ``StaleStateError`` when the record has
moved on, and ``NotFoundError`` when it does not exist. Records cross this
boundary as pydantic models (``reservation_scheduler.schemas.reservation``),
never as live ORM objects.
"""

import abc
from datetime import date, datetime, time
from typing import Iterable, List, Optional

from reservation_scheduler.schemas.reservation import (
    Booking,
    RequesterHistory,
    ReservationStatus,
    TemporaryReservation,
    WaitlistEntry,
    WaitlistStatus,
)


class ReservationStore(abc.ABC):

    # --- Temporary reservations ---

    @abc.abstractmethod
    def get_active_by_resource(
        self, resource_id: str, on: date
    ) -> List[TemporaryReservation]:
        """Active holds on ``resource_id`` for the given day."""

    @abc.abstractmethod
    def insert(self, reservation: TemporaryReservation) -> str:
        """
        Persist a new hold and return its id.

        Raises ``DuplicateConflictError`` when a resource-bound hold would
        overlap another active hold or a confirmed booking on the same
        resource and day.
        """

    @abc.abstractmethod
    def update_state(
        self,
        reservation_id: str,
        from_state: ReservationStatus,
        to_state: ReservationStatus,
        extra: Optional[dict] = None,
        *,
        expect: Optional[dict] = None,
    ) -> TemporaryReservation:
        """
        Move a hold from ``from_state`` to ``to_state`` and apply ``extra``.

        ``expect`` adds equality guards on other columns (e.g. the extension
        counter) to the compare-and-swap.
        """

    @abc.abstractmethod
    def convert_reservation(
        self,
        reservation_id: str,
        extra: Optional[dict] = None,
        booking: Optional[Booking] = None,
    ) -> TemporaryReservation:
        """
        Move an active hold to ``converted`` and record ``booking`` in the same
        transaction. Either both are stored or neither is.
        """

    @abc.abstractmethod
    def list_due_for_expiration(self, now: datetime) -> List[TemporaryReservation]:
        """Active holds with ``deadline <= now``, oldest deadline first."""

    @abc.abstractmethod
    def get_reservation(self, reservation_id: str) -> Optional[TemporaryReservation]:
        pass

    @abc.abstractmethod
    def list_reservations(
        self,
        *,
        requester_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        status: Optional[ReservationStatus] = None,
        on: Optional[date] = None,
    ) -> List[TemporaryReservation]:
        pass

    @abc.abstractmethod
    def list_expiring_soon(
        self, now: datetime, horizon: datetime
    ) -> List[TemporaryReservation]:
        """Active holds due in ``(now, horizon]`` whose notice is not yet sent."""

    @abc.abstractmethod
    def claim_expiring_notice(self, reservation_id: str) -> bool:
        """Flip the expiring-soon marker; False if someone else already did."""

    @abc.abstractmethod
    def release_expiring_notice(self, reservation_id: str) -> None:
        pass

    # --- Waitlist ---

    @abc.abstractmethod
    def insert_waitlist_entry(self, entry: WaitlistEntry) -> str:
        pass

    @abc.abstractmethod
    def get_waitlist_entry(self, entry_id: str) -> Optional[WaitlistEntry]:
        pass

    @abc.abstractmethod
    def list_waitlist(
        self,
        resource_id: Optional[str],
        on: date,
        start: time,
        end: time,
        status: Optional[WaitlistStatus] = WaitlistStatus.WAITING,
    ) -> List[WaitlistEntry]:
        """
        Entries of one exact bucket. ``resource_id=None`` selects wildcard
        entries only.
        """

    @abc.abstractmethod
    def list_waitlist_entries(
        self,
        *,
        requester_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        status: Optional[WaitlistStatus] = None,
        on: Optional[date] = None,
    ) -> List[WaitlistEntry]:
        """Entries matching every given filter, oldest first."""

    @abc.abstractmethod
    def update_waitlist_state(
        self,
        entry_id: str,
        from_state: WaitlistStatus,
        to_state: WaitlistStatus,
        extra: Optional[dict] = None,
    ) -> WaitlistEntry:
        pass

    @abc.abstractmethod
    def list_notified_before(self, cutoff: datetime) -> List[WaitlistEntry]:
        """Entries still ``notified`` whose ``notified_at`` is at or before cutoff."""

    # --- Firm bookings ---

    @abc.abstractmethod
    def insert_booking(self, booking: Booking) -> str:
        """Raises ``DuplicateConflictError`` when the booking id is taken."""

    @abc.abstractmethod
    def get_bookings_by_resource(self, resource_id: str, on: date) -> List[Booking]:
        """Confirmed bookings on ``resource_id`` for the given day."""

    # --- Requester history ---

    @abc.abstractmethod
    def requester_history(
        self, requester_id: str, since: Optional[datetime] = None
    ) -> RequesterHistory:
        """Holds created (and how many of them converted) since ``since``."""

    @abc.abstractmethod
    def get_requester_joined_at(self, requester_id: str) -> Optional[datetime]:
        pass

    @abc.abstractmethod
    def upsert_requester_profile(self, requester_id: str, joined_at: datetime) -> None:
        pass


def first_overlap(candidate, others: Iterable):
    """The first record in ``others`` whose slot overlaps ``candidate``'s."""
    for other in others:
        if other.id != candidate.id and candidate.interval.overlaps(other.interval):
            return other
    return None
