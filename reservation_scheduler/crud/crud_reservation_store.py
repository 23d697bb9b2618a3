# reservation_scheduler/crud/crud_reservation_store.py
import logging
from datetime import date, time
from typing import List, Optional

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from reservation_scheduler.core.exceptions import (
    DuplicateConflictError,
    NotFoundError,
    StaleStateError,
)
from reservation_scheduler.crud.store import ReservationStore
from reservation_scheduler.models.booking import Booking as BookingModel
from reservation_scheduler.models.requester_profile import RequesterProfile
from reservation_scheduler.models.resource_slot import ResourceSlot
from reservation_scheduler.models.temporary_reservation import (
    TemporaryReservation as ReservationModel,
)
from reservation_scheduler.models.waitlist_entry import (
    WaitlistEntry as WaitlistEntryModel,
)
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


def _value(state) -> str:
    return state.value if hasattr(state, "value") else str(state)


def _columns(values: dict) -> dict:
    """Enum members become their stored string values."""
    return {key: _value(v) if hasattr(v, "value") else v for key, v in values.items()}


class SQLReservationStore(ReservationStore):
    """
    ``ReservationStore`` over SQLAlchemy.

    Each operation runs in its own short session from ``session_factory``.
    State transitions are single conditional UPDATEs; a rowcount of zero means
    the compare-and-swap lost. Inserting an active hold first locks the
    (resource, day) row in ``resource_slots`` and re-checks the slot inside
    that transaction, so writers in different processes queue up per
    resource and day.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    # --- Temporary reservations ---

    def get_active_by_resource(self, resource_id, on):
        with self._session_factory() as db:
            rows = (
                db.query(ReservationModel)
                .filter(
                    ReservationModel.resource_id == resource_id,
                    ReservationModel.date == on,
                    ReservationModel.status == ReservationStatus.ACTIVE.value,
                )
                .order_by(ReservationModel.start_time, ReservationModel.id)
                .all()
            )
            return [TemporaryReservation.model_validate(r) for r in rows]

    def _lock_slot(self, db: Session, resource_id: str, on: date) -> None:
        """
        Take the write lock on the (resource, day) row, creating it on first use.

        The bump is the first statement of the transaction, so on SQLite it
        also acquires the database write lock before anything is read.
        """
        slot = db.query(ResourceSlot).filter(
            ResourceSlot.resource_id == resource_id, ResourceSlot.date == on
        )
        if slot.update({"version": ResourceSlot.version + 1}, synchronize_session=False):
            return
        db.add(ResourceSlot(resource_id=resource_id, date=on, version=1))
        try:
            db.flush()
        except IntegrityError:
            # Another writer created the row first; wait on its lock instead
            db.rollback()
            slot.update({"version": ResourceSlot.version + 1}, synchronize_session=False)

    def _find_blocker(self, db: Session, reservation: TemporaryReservation):
        blocker = (
            db.query(ReservationModel.id)
            .filter(
                ReservationModel.resource_id == reservation.resource_id,
                ReservationModel.date == reservation.date,
                ReservationModel.status == ReservationStatus.ACTIVE.value,
                ReservationModel.start_time < reservation.end_time,
                ReservationModel.end_time > reservation.start_time,
                ReservationModel.id != reservation.id,
            )
            .first()
        )
        if blocker:
            return blocker.id

        booking = (
            db.query(BookingModel.id)
            .filter(
                BookingModel.resource_id == reservation.resource_id,
                BookingModel.date == reservation.date,
                BookingModel.status == BookingStatus.CONFIRMED.value,
                BookingModel.start_time < reservation.end_time,
                BookingModel.end_time > reservation.start_time,
            )
            .first()
        )
        return booking.id if booking else None

    def insert(self, reservation: TemporaryReservation) -> str:
        with self._session_factory() as db:
            if (
                reservation.resource_id is not None
                and reservation.status == ReservationStatus.ACTIVE
            ):
                self._lock_slot(db, reservation.resource_id, reservation.date)
                blocker_id = self._find_blocker(db, reservation)
                if blocker_id:
                    db.rollback()
                    raise DuplicateConflictError(
                        f"Resource {reservation.resource_id} is already taken for "
                        f"{reservation.interval} by {blocker_id}"
                    )

            db_obj = ReservationModel(**_columns(reservation.model_dump()))
            db.add(db_obj)
            db.commit()
            return db_obj.id

    def update_state(
        self, reservation_id, from_state, to_state, extra=None, *, expect=None
    ):
        values = _columns(dict(extra or {}))
        values["status"] = _value(to_state)

        with self._session_factory() as db:
            query = db.query(ReservationModel).filter(
                ReservationModel.id == reservation_id,
                ReservationModel.status == _value(from_state),
            )
            for field, expected in (expect or {}).items():
                query = query.filter(getattr(ReservationModel, field) == expected)

            if query.update(values, synchronize_session=False) == 0:
                self._lost_swap(db, reservation_id, from_state)
            db.commit()

            db_obj = db.get(ReservationModel, reservation_id)
            return TemporaryReservation.model_validate(db_obj)

    def _lost_swap(self, db: Session, reservation_id: str, from_state):
        db.rollback()
        exists = (
            db.query(ReservationModel.id)
            .filter(ReservationModel.id == reservation_id)
            .first()
        )
        if not exists:
            raise NotFoundError("Reservation", reservation_id)
        raise StaleStateError(reservation_id, _value(from_state))

    def convert_reservation(self, reservation_id, extra=None, booking=None):
        values = _columns(dict(extra or {}))
        values["status"] = ReservationStatus.CONVERTED.value

        with self._session_factory() as db:
            updated = (
                db.query(ReservationModel)
                .filter(
                    ReservationModel.id == reservation_id,
                    ReservationModel.status == ReservationStatus.ACTIVE.value,
                )
                .update(values, synchronize_session=False)
            )
            if updated == 0:
                self._lost_swap(db, reservation_id, ReservationStatus.ACTIVE)
            if booking is not None:
                db.add(BookingModel(**_columns(booking.model_dump())))
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise DuplicateConflictError(
                    f"Booking {booking.id} could not be recorded; "
                    f"reservation {reservation_id} stays active"
                ) from e

            db_obj = db.get(ReservationModel, reservation_id)
            return TemporaryReservation.model_validate(db_obj)

    def list_due_for_expiration(self, now):
        with self._session_factory() as db:
            rows = (
                db.query(ReservationModel)
                .filter(
                    ReservationModel.status == ReservationStatus.ACTIVE.value,
                    ReservationModel.deadline <= now,
                )
                .order_by(ReservationModel.deadline, ReservationModel.id)
                .all()
            )
            return [TemporaryReservation.model_validate(r) for r in rows]

    def get_reservation(self, reservation_id):
        with self._session_factory() as db:
            db_obj = db.get(ReservationModel, reservation_id)
            return TemporaryReservation.model_validate(db_obj) if db_obj else None

    def list_reservations(
        self, *, requester_id=None, resource_id=None, status=None, on=None
    ):
        with self._session_factory() as db:
            query = db.query(ReservationModel)
            if requester_id is not None:
                query = query.filter(ReservationModel.requester_id == requester_id)
            if resource_id is not None:
                query = query.filter(ReservationModel.resource_id == resource_id)
            if status is not None:
                query = query.filter(ReservationModel.status == _value(status))
            if on is not None:
                query = query.filter(ReservationModel.date == on)
            rows = query.order_by(
                ReservationModel.created_at, ReservationModel.id
            ).all()
            return [TemporaryReservation.model_validate(r) for r in rows]

    def list_expiring_soon(self, now, horizon):
        with self._session_factory() as db:
            rows = (
                db.query(ReservationModel)
                .filter(
                    ReservationModel.status == ReservationStatus.ACTIVE.value,
                    ReservationModel.expiring_notice_sent.is_(False),
                    ReservationModel.deadline > now,
                    ReservationModel.deadline <= horizon,
                )
                .order_by(ReservationModel.deadline, ReservationModel.id)
                .all()
            )
            return [TemporaryReservation.model_validate(r) for r in rows]

    def claim_expiring_notice(self, reservation_id):
        with self._session_factory() as db:
            updated = (
                db.query(ReservationModel)
                .filter(
                    ReservationModel.id == reservation_id,
                    ReservationModel.status == ReservationStatus.ACTIVE.value,
                    ReservationModel.expiring_notice_sent.is_(False),
                )
                .update({"expiring_notice_sent": True}, synchronize_session=False)
            )
            db.commit()
            return updated == 1

    def release_expiring_notice(self, reservation_id):
        with self._session_factory() as db:
            db.query(ReservationModel).filter(
                ReservationModel.id == reservation_id
            ).update({"expiring_notice_sent": False}, synchronize_session=False)
            db.commit()

    # --- Waitlist ---

    def insert_waitlist_entry(self, entry):
        with self._session_factory() as db:
            db_obj = WaitlistEntryModel(**_columns(entry.model_dump()))
            db.add(db_obj)
            db.commit()
            return db_obj.id

    def get_waitlist_entry(self, entry_id):
        with self._session_factory() as db:
            db_obj = db.get(WaitlistEntryModel, entry_id)
            return WaitlistEntry.model_validate(db_obj) if db_obj else None

    def list_waitlist(
        self,
        resource_id: Optional[str],
        on: date,
        start: time,
        end: time,
        status: Optional[WaitlistStatus] = WaitlistStatus.WAITING,
    ) -> List[WaitlistEntry]:
        with self._session_factory() as db:
            query = db.query(WaitlistEntryModel).filter(
                WaitlistEntryModel.date == on,
                WaitlistEntryModel.start_time == start,
                WaitlistEntryModel.end_time == end,
            )
            if resource_id is None:
                query = query.filter(WaitlistEntryModel.resource_id.is_(None))
            else:
                query = query.filter(WaitlistEntryModel.resource_id == resource_id)
            if status is not None:
                query = query.filter(WaitlistEntryModel.status == _value(status))
            rows = query.order_by(
                WaitlistEntryModel.created_at, WaitlistEntryModel.id
            ).all()
            return [WaitlistEntry.model_validate(r) for r in rows]

    def list_waitlist_entries(
        self, *, requester_id=None, resource_id=None, status=None, on=None
    ):
        with self._session_factory() as db:
            query = db.query(WaitlistEntryModel)
            if requester_id is not None:
                query = query.filter(WaitlistEntryModel.requester_id == requester_id)
            if resource_id is not None:
                query = query.filter(WaitlistEntryModel.resource_id == resource_id)
            if status is not None:
                query = query.filter(WaitlistEntryModel.status == _value(status))
            if on is not None:
                query = query.filter(WaitlistEntryModel.date == on)
            rows = query.order_by(
                WaitlistEntryModel.created_at, WaitlistEntryModel.id
            ).all()
            return [WaitlistEntry.model_validate(r) for r in rows]

    def update_waitlist_state(self, entry_id, from_state, to_state, extra=None):
        values = _columns(dict(extra or {}))
        values["status"] = _value(to_state)

        with self._session_factory() as db:
            updated = (
                db.query(WaitlistEntryModel)
                .filter(
                    WaitlistEntryModel.id == entry_id,
                    WaitlistEntryModel.status == _value(from_state),
                )
                .update(values, synchronize_session=False)
            )
            if updated == 0:
                db.rollback()
                if db.get(WaitlistEntryModel, entry_id) is None:
                    raise NotFoundError("Waitlist entry", entry_id)
                raise StaleStateError(entry_id, _value(from_state))
            db.commit()

            db_obj = db.get(WaitlistEntryModel, entry_id)
            return WaitlistEntry.model_validate(db_obj)

    def list_notified_before(self, cutoff):
        with self._session_factory() as db:
            rows = (
                db.query(WaitlistEntryModel)
                .filter(
                    WaitlistEntryModel.status == WaitlistStatus.NOTIFIED.value,
                    WaitlistEntryModel.notified_at <= cutoff,
                )
                .order_by(WaitlistEntryModel.notified_at, WaitlistEntryModel.id)
                .all()
            )
            return [WaitlistEntry.model_validate(r) for r in rows]

    # --- Firm bookings ---

    def insert_booking(self, booking):
        with self._session_factory() as db:
            db_obj = BookingModel(**_columns(booking.model_dump()))
            db.add(db_obj)
            try:
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise DuplicateConflictError(f"Booking {booking.id} already exists") from e
            logger.debug(f"Booking {db_obj.id} recorded for {db_obj.resource_id}")
            return db_obj.id

    def get_bookings_by_resource(self, resource_id, on):
        with self._session_factory() as db:
            rows = (
                db.query(BookingModel)
                .filter(
                    BookingModel.resource_id == resource_id,
                    BookingModel.date == on,
                    BookingModel.status == BookingStatus.CONFIRMED.value,
                )
                .order_by(BookingModel.start_time, BookingModel.id)
                .all()
            )
            return [Booking.model_validate(r) for r in rows]

    # --- Requester history ---

    def requester_history(self, requester_id, since=None):
        converted = case(
            (ReservationModel.status == ReservationStatus.CONVERTED.value, 1),
            else_=0,
        )
        with self._session_factory() as db:
            query = db.query(
                func.count(ReservationModel.id), func.sum(converted)
            ).filter(ReservationModel.requester_id == requester_id)
            if since is not None:
                query = query.filter(ReservationModel.created_at >= since)
            holds, conversions = query.one()

        return RequesterHistory(
            requester_id=requester_id, holds=holds or 0, conversions=conversions or 0
        )

    def get_requester_joined_at(self, requester_id):
        with self._session_factory() as db:
            profile = db.get(RequesterProfile, requester_id)
            return profile.joined_at if profile else None

    def upsert_requester_profile(self, requester_id, joined_at):
        with self._session_factory() as db:
            profile = db.get(RequesterProfile, requester_id)
            if profile is None:
                db.add(RequesterProfile(requester_id=requester_id, joined_at=joined_at))
            else:
                profile.joined_at = joined_at
            db.commit()
