# reservation_scheduler/models/temporary_reservation.py
import uuid
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Float, Date, Time, Index, text,
    CheckConstraint,
)
from reservation_scheduler.db.base_class import Base
from reservation_scheduler.db.types import UTCDateTime


class TemporaryReservation(Base):
    __tablename__ = "temporary_reservations"

    id = Column(
        String, primary_key=True, default=lambda: f"rsv_{uuid.uuid4().hex[:12]}"
    )
    requester_id = Column(String, nullable=False, index=True)
    # Nullable: a hold may be placed on a date/time without a concrete space
    resource_id = Column(String, nullable=True)

    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    # State
    status = Column(
        String, nullable=False, server_default=text("'active'")
    )  # active, expired, converted, released

    # Deadline tracking
    created_at = Column(UTCDateTime, nullable=False)
    deadline = Column(UTCDateTime, nullable=False)
    ttl_seconds = Column(Integer, nullable=False)
    extension_count = Column(Integer, nullable=False, server_default=text("0"))
    expiring_notice_sent = Column(
        Boolean, nullable=False, server_default=text("false")
    )

    estimated_value = Column(Float, nullable=False, server_default=text("0"))
    notes = Column(Text, nullable=True)  # append-only audit trail

    # Conversion
    converted_at = Column(UTCDateTime, nullable=True)
    booking_ref = Column(String, nullable=True)

    # Release / expiry
    released_at = Column(UTCDateTime, nullable=True)
    release_reason = Column(Text, nullable=True)
    expired_at = Column(UTCDateTime, nullable=True)

    updated_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        CheckConstraint("start_time < end_time", name="ck_rsv_interval"),
        # Conflict checks: active holds on a resource for a given day
        Index("ix_rsv_resource_date_status", "resource_id", "date", "status"),
        # Sweep: active holds ordered by deadline
        Index("ix_rsv_status_deadline", "status", "deadline"),
    )
