# reservation_scheduler/models/booking.py
import uuid
from sqlalchemy import Column, String, Date, Time, Index, text
from reservation_scheduler.db.base_class import Base
from reservation_scheduler.db.types import UTCDateTime


class Booking(Base):
    """A firm booking or block; occupies its slot regardless of any hold."""

    __tablename__ = "bookings"

    id = Column(
        String, primary_key=True, default=lambda: f"bk_{uuid.uuid4().hex[:12]}"
    )
    resource_id = Column(String, nullable=False)
    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    reference = Column(String, nullable=False)
    source_reservation_id = Column(String, nullable=True)
    status = Column(
        String, nullable=False, server_default=text("'confirmed'")
    )  # confirmed, cancelled

    created_at = Column(UTCDateTime, nullable=False)

    __table_args__ = (
        Index("ix_bk_resource_date_status", "resource_id", "date", "status"),
    )
