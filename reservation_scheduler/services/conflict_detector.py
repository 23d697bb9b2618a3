# reservation_scheduler/services/conflict_detector.py
"""
Resource-scoped overlap detection for temporary holds.

Only holds on the same resource and day can collide; resource-less candidates
never conflict here and compete later, at promotion time.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, time
from typing import List, Optional

from reservation_scheduler.crud.store import ReservationStore
from reservation_scheduler.schemas.reservation import Booking, TemporaryReservation
from reservation_scheduler.utils.intervals import DateLike, Interval, TimeLike

logger = logging.getLogger(__name__)


@dataclass
class ConflictReport:
    resource_id: Optional[str]
    interval: Interval
    reservations: List[TemporaryReservation] = field(default_factory=list)
    bookings: List[Booking] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.reservations or self.bookings)

    @property
    def holder_ids(self) -> List[str]:
        """Requesters whose active holds block the slot, in order of discovery."""
        seen = []
        for reservation in self.reservations:
            if reservation.requester_id not in seen:
                seen.append(reservation.requester_id)
        return seen

    def describe(self) -> str:
        parts = [f"hold {r.id} ({r.requester_id})" for r in self.reservations]
        parts += [f"booking {b.reference}" for b in self.bookings]
        return (
            f"Resource {self.resource_id} is unavailable for {self.interval}: "
            + ", ".join(parts)
        )


class ConflictDetector:
    def __init__(self, store: ReservationStore):
        self.store = store

    def find_overlaps(
        self,
        resource_id: Optional[str],
        on: DateLike,
        start: TimeLike,
        end: TimeLike,
        exclude_reservation_id: Optional[str] = None,
    ) -> List[TemporaryReservation]:
        """
        Active holds on ``resource_id`` whose slot intersects [start, end).

        Raises ``ValidationError`` for zero-length or inverted intervals.
        """
        interval = Interval.of(on, start, end)
        if resource_id is None:
            return []
        return [
            r
            for r in self.store.get_active_by_resource(resource_id, interval.date)
            if r.id != exclude_reservation_id and interval.overlaps(r.interval)
        ]

    def find_booking_overlaps(
        self, resource_id: Optional[str], interval: Interval
    ) -> List[Booking]:
        if resource_id is None:
            return []
        return [
            b
            for b in self.store.get_bookings_by_resource(resource_id, interval.date)
            if interval.overlaps(b.interval)
        ]

    def check(
        self,
        resource_id: Optional[str],
        on: DateLike,
        start: TimeLike,
        end: TimeLike,
        exclude_reservation_id: Optional[str] = None,
    ) -> ConflictReport:
        interval = Interval.of(on, start, end)
        report = ConflictReport(
            resource_id=resource_id,
            interval=interval,
            reservations=self.find_overlaps(
                resource_id,
                interval.date,
                interval.start,
                interval.end,
                exclude_reservation_id=exclude_reservation_id,
            ),
            bookings=self.find_booking_overlaps(resource_id, interval),
        )
        if report.has_conflicts:
            logger.info(report.describe())
        return report

    def is_free(
        self, resource_id: Optional[str], on: date, start: time, end: time
    ) -> bool:
        return not self.check(resource_id, on, start, end).has_conflicts
