# reservation_scheduler/services/reservation_lifecycle.py
"""
Temporary reservation state machine.

    create -> active -> converted | released | expired

Terminal states never change again. Releasing or expiring a hold frees its
slot, and the next waiting entry for that bucket is promoted before the call
returns. Every transition is a compare-and-swap in the store; a lost race is
retried once after re-reading the record.
"""

import logging
import uuid
from contextlib import nullcontext
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, List, Optional, TypeVar

from reservation_scheduler.core.clock import Clock, SystemClock
from reservation_scheduler.core.config import settings
from reservation_scheduler.core.exceptions import (
    ConflictError,
    DuplicateConflictError,
    InvalidStateError,
    NotFoundError,
    StaleStateError,
    ValidationError,
)
from reservation_scheduler.crud.store import ReservationStore
from reservation_scheduler.schemas.events import (
    IntervalPayload,
    ReservationConverted,
    ReservationExpired,
)
from reservation_scheduler.schemas.reservation import (
    Booking,
    ReservationStatistics,
    ReservationStatus,
    TemporaryReservation,
    WaitlistEntry,
    WaitlistStatus,
)
from reservation_scheduler.services.conflict_detector import ConflictDetector
from reservation_scheduler.services.priority_queue import PriorityQueueEngine
from reservation_scheduler.utils.intervals import Interval
from reservation_scheduler.utils.locks import KeyedLock
from reservation_scheduler.utils.notifications import (
    LoggingNotificationDispatcher,
    NotificationDispatcher,
    dispatch_safely,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ExpirationOutcome:
    reservation: TemporaryReservation
    expired: bool
    promoted_entry: Optional[WaitlistEntry] = None
    errors: List[str] = field(default_factory=list)


def append_note(notes: Optional[str], moment: datetime, text: str) -> str:
    line = f"[{moment.strftime('%Y-%m-%d %H:%M')}] {text}"
    return f"{notes}\n{line}" if notes else line


class ReservationLifecycleManager:
    def __init__(
        self,
        store: ReservationStore,
        queue: Optional[PriorityQueueEngine] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        *,
        detector: Optional[ConflictDetector] = None,
        default_ttl: Optional[timedelta] = None,
        max_extensions: Optional[int] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.store = store
        self.clock = clock or SystemClock()
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.queue = queue or PriorityQueueEngine(store, self.dispatcher, self.clock)
        self.detector = detector or ConflictDetector(store)
        self.default_ttl = default_ttl or timedelta(hours=settings.RESERVATION_TTL_HOURS)
        self.max_extensions = (
            max_extensions if max_extensions is not None else settings.MAX_EXTENSIONS
        )
        self.locks = locks or KeyedLock()

    # --- helpers ---

    def _slot_lock(self, resource_id: Optional[str], interval: Interval):
        if resource_id is None:
            return nullcontext()
        return self.locks.hold((resource_id, interval.date))

    def _retry_once(self, operation: Callable[[], T]) -> T:
        try:
            return operation()
        except StaleStateError as e:
            logger.info(f"{e}; re-reading and retrying once")
            return operation()

    def _require(self, reservation_id: str) -> TemporaryReservation:
        reservation = self.store.get_reservation(reservation_id)
        if reservation is None:
            raise NotFoundError("Reservation", reservation_id)
        return reservation

    def _require_active(
        self, reservation: TemporaryReservation, action: str
    ) -> TemporaryReservation:
        """
        Refuse ``action`` on a hold that is no longer active. A hold past its
        deadline that the sweep has not reached yet is expired on the spot.
        """
        if reservation.status != ReservationStatus.ACTIVE:
            raise InvalidStateError(
                f"Cannot {action} reservation {reservation.id}: "
                f"it is {reservation.status.value}",
                current_state=reservation.status.value,
            )
        if reservation.deadline <= self.clock.now():
            self.expire(reservation.id)
            raise InvalidStateError(
                f"Cannot {action} reservation {reservation.id}: its deadline "
                f"{reservation.deadline.isoformat()} has passed",
                current_state=ReservationStatus.EXPIRED.value,
            )
        return reservation

    # --- create ---

    def request_hold(
        self,
        requester_id: str,
        resource_id: Optional[str],
        interval: Interval,
        ttl: Optional[timedelta] = None,
        estimated_value: float = 0.0,
        notes: Optional[str] = None,
    ) -> TemporaryReservation:
        """
        Place an exclusive hold on ``resource_id`` for ``interval``.

        Raises ``ConflictError`` (with the blocking holders) when the slot is
        taken on that resource. Resource-less holds are never checked.
        """
        if not requester_id:
            raise ValidationError("requester_id is required")
        interval.validate()
        ttl = ttl if ttl is not None else self.default_ttl
        if ttl <= timedelta(0):
            raise ValidationError("TTL must be positive")
        if estimated_value < 0:
            raise ValidationError("estimated_value cannot be negative")

        with self._slot_lock(resource_id, interval):
            report = self.detector.check(
                resource_id, interval.date, interval.start, interval.end
            )
            if report.has_conflicts:
                raise ConflictError(report.describe(), report)

            now = self.clock.now()
            reservation = TemporaryReservation(
                id=f"rsv_{uuid.uuid4().hex[:12]}",
                requester_id=requester_id,
                resource_id=resource_id,
                date=interval.date,
                start_time=interval.start,
                end_time=interval.end,
                created_at=now,
                deadline=now + ttl,
                ttl_seconds=int(ttl.total_seconds()),
                estimated_value=estimated_value,
                notes=notes,
                updated_at=now,
            )
            try:
                self.store.insert(reservation)
            except DuplicateConflictError as e:
                report = self.detector.check(
                    resource_id, interval.date, interval.start, interval.end
                )
                raise DuplicateConflictError(str(e), report) from e

        logger.info(
            f"Hold {reservation.id} placed by {requester_id} on "
            f"{resource_id or 'no resource'} {interval} until "
            f"{reservation.deadline.isoformat()}"
        )
        return self._require(reservation.id)

    # --- active -> active ---

    def extend(self, reservation_id: str) -> TemporaryReservation:
        def attempt():
            current = self._require_active(self._require(reservation_id), "extend")
            if current.extension_count >= self.max_extensions:
                raise InvalidStateError(
                    f"Reservation {reservation_id} already used all "
                    f"{self.max_extensions} extensions",
                    current_state=current.status.value,
                )

            with self._slot_lock(current.resource_id, current.interval):
                report = self.detector.check(
                    current.resource_id,
                    current.date,
                    current.start_time,
                    current.end_time,
                    exclude_reservation_id=current.id,
                )
                if report.has_conflicts:
                    raise ConflictError(report.describe(), report)

                now = self.clock.now()
                new_deadline = current.deadline + timedelta(seconds=current.ttl_seconds)
                return self.store.update_state(
                    current.id,
                    ReservationStatus.ACTIVE,
                    ReservationStatus.ACTIVE,
                    {
                        "deadline": new_deadline,
                        "extension_count": current.extension_count + 1,
                        "expiring_notice_sent": False,
                        "notes": append_note(
                            current.notes,
                            now,
                            f"Extended until {new_deadline.isoformat()}",
                        ),
                        "updated_at": now,
                    },
                    expect={"extension_count": current.extension_count},
                )

        extended = self._retry_once(attempt)
        logger.info(
            f"Reservation {reservation_id} extended "
            f"({extended.extension_count}/{self.max_extensions}) until "
            f"{extended.deadline.isoformat()}"
        )
        return extended

    # --- active -> converted ---

    def convert(self, reservation_id: str, booking_ref: str) -> TemporaryReservation:
        if not booking_ref:
            raise ValidationError("booking_ref is required")

        def attempt():
            current = self._require_active(self._require(reservation_id), "convert")
            now = self.clock.now()
            # The booking keeps the slot blocked once the hold stops being active
            booking = None
            if current.resource_id is not None:
                booking = Booking(
                    id=f"bk_{uuid.uuid4().hex[:12]}",
                    resource_id=current.resource_id,
                    date=current.date,
                    start_time=current.start_time,
                    end_time=current.end_time,
                    reference=booking_ref,
                    source_reservation_id=current.id,
                    created_at=now,
                )
            return self.store.convert_reservation(
                current.id,
                {
                    "converted_at": now,
                    "booking_ref": booking_ref,
                    "notes": append_note(
                        current.notes, now, f"Converted to booking {booking_ref}"
                    ),
                    "updated_at": now,
                },
                booking,
            )

        converted = self._retry_once(attempt)
        logger.info(f"Reservation {reservation_id} converted to booking {booking_ref}")
        dispatch_safely(
            self.dispatcher,
            ReservationConverted(
                requester_id=converted.requester_id,
                resource_id=converted.resource_id,
                interval=IntervalPayload.from_interval(converted.interval),
                reason=f"Hold converted into booking {booking_ref}",
                occurred_at=converted.converted_at,
                reservation_id=converted.id,
                booking_ref=booking_ref,
            ),
        )
        return converted

    # --- active -> released ---

    def release(
        self, reservation_id: str, reason: Optional[str] = None
    ) -> TemporaryReservation:
        def attempt():
            current = self._require_active(self._require(reservation_id), "release")
            now = self.clock.now()
            return self.store.update_state(
                current.id,
                ReservationStatus.ACTIVE,
                ReservationStatus.RELEASED,
                {
                    "released_at": now,
                    "release_reason": reason,
                    "notes": append_note(
                        current.notes,
                        now,
                        f"Released: {reason}" if reason else "Released",
                    ),
                    "updated_at": now,
                },
            )

        released = self._retry_once(attempt)
        logger.info(f"Reservation {reservation_id} released ({reason or 'no reason'})")
        self._slot_freed(released, f"Hold {released.id} was released")
        return released

    # --- active -> expired ---

    def expire(
        self, reservation_id: str, errors: Optional[list] = None
    ) -> ExpirationOutcome:
        """
        Expire an overdue hold and promote the next waiting entry.

        A hold that is no longer active, or whose deadline moved into the
        future, is left alone and reported with ``expired=False``.
        """
        errors = errors if errors is not None else []
        for attempt in range(2):
            current = self._require(reservation_id)
            now = self.clock.now()
            if current.status != ReservationStatus.ACTIVE or current.deadline > now:
                return ExpirationOutcome(reservation=current, expired=False, errors=errors)
            try:
                expired = self.store.update_state(
                    current.id,
                    ReservationStatus.ACTIVE,
                    ReservationStatus.EXPIRED,
                    {
                        "expired_at": now,
                        "notes": append_note(
                            current.notes, now, "Expired without action"
                        ),
                        "updated_at": now,
                    },
                    expect={"extension_count": current.extension_count},
                )
                break
            except StaleStateError:
                if attempt:
                    current = self._require(reservation_id)
                    return ExpirationOutcome(
                        reservation=current, expired=False, errors=errors
                    )

        logger.info(
            f"Reservation {reservation_id} expired (deadline "
            f"{expired.deadline.isoformat()})"
        )
        dispatch_safely(
            self.dispatcher,
            ReservationExpired(
                requester_id=expired.requester_id,
                resource_id=expired.resource_id,
                interval=IntervalPayload.from_interval(expired.interval),
                reason="Hold deadline passed without conversion",
                occurred_at=now,
                reservation_id=expired.id,
                deadline=expired.deadline,
            ),
            errors,
        )
        promoted = self._slot_freed(
            expired, f"Hold {expired.id} expired", errors=errors
        )
        return ExpirationOutcome(
            reservation=expired, expired=True, promoted_entry=promoted, errors=errors
        )

    def _slot_freed(
        self,
        reservation: TemporaryReservation,
        reason: str,
        errors: Optional[list] = None,
    ) -> Optional[WaitlistEntry]:
        logger.info(
            f"Slot freed: {reservation.resource_id or 'no resource'} "
            f"{reservation.interval} ({reason})"
        )
        return self.queue.promote_next(
            reservation.resource_id,
            reservation.date,
            reservation.start_time,
            reservation.end_time,
            reason=reason,
            errors=errors,
        )

    # --- waitlist claim ---

    def claim(self, entry_id: str, ttl: Optional[timedelta] = None) -> TemporaryReservation:
        """
        Turn a ``notified`` waitlist entry into a hold on the offered slot.

        The entry becomes ``promoted`` and points at the new reservation.
        """
        entry = self.queue.get(entry_id)
        if entry.status != WaitlistStatus.NOTIFIED:
            raise InvalidStateError(
                f"Waitlist entry {entry_id} is {entry.status.value}, not notified",
                current_state=entry.status.value,
            )
        if entry.notified_at and entry.notified_at + self.queue.grace <= self.clock.now():
            raise InvalidStateError(
                f"Claim window for waitlist entry {entry_id} has passed",
                current_state=entry.status.value,
            )

        reservation = self.request_hold(
            entry.requester_id,
            entry.offered_resource_id or entry.resource_id,
            entry.interval,
            ttl=ttl,
            notes=f"Claimed from waitlist entry {entry.id}",
        )
        try:
            self.store.update_waitlist_state(
                entry.id,
                WaitlistStatus.NOTIFIED,
                WaitlistStatus.PROMOTED,
                {"reservation_id": reservation.id, "updated_at": self.clock.now()},
            )
        except StaleStateError:
            # Entry lapsed or was withdrawn while the hold was being placed
            self.release(reservation.id, reason=f"Waitlist entry {entry_id} is no longer notified")
            raise InvalidStateError(
                f"Waitlist entry {entry_id} changed state during claim"
            )

        logger.info(
            f"Waitlist entry {entry_id} claimed as reservation {reservation.id}"
        )
        return reservation

    # --- reads ---

    def get(self, reservation_id: str) -> TemporaryReservation:
        return self._require(reservation_id)

    def list_reservations(self, **filters) -> List[TemporaryReservation]:
        return self.store.list_reservations(**filters)

    def statistics(self, **filters) -> ReservationStatistics:
        reservations = self.store.list_reservations(**filters)
        now = self.clock.now()
        horizon = now + timedelta(hours=24)

        by_status = {status.value: 0 for status in ReservationStatus}
        for reservation in reservations:
            by_status[reservation.status.value] += 1

        total = len(reservations)
        converted = by_status[ReservationStatus.CONVERTED.value]
        return ReservationStatistics(
            total=total,
            by_status=by_status,
            total_estimated_value=sum(r.estimated_value for r in reservations),
            expiring_within_24h=sum(
                1
                for r in reservations
                if r.status == ReservationStatus.ACTIVE and r.deadline <= horizon
            ),
            conversion_rate=round(converted / total * 100) if total else 0,
        )
