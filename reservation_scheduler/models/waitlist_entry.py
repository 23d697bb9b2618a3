# reservation_scheduler/models/waitlist_entry.py
import uuid
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Float, Date, Time, Index, text
)
from reservation_scheduler.db.base_class import Base
from reservation_scheduler.db.types import UTCDateTime


class WaitlistEntry(Base):
    __tablename__ = "waitlist_entries"

    id = Column(
        String, primary_key=True, default=lambda: f"wl_{uuid.uuid4().hex[:12]}"
    )
    requester_id = Column(String, nullable=False, index=True)
    # NULL means "any resource" for the interval
    resource_id = Column(String, nullable=True)

    date = Column(Date, nullable=False)
    start_time = Column(Time, nullable=False)
    end_time = Column(Time, nullable=False)

    # Snapshot of the last computed score; ranking always recomputes
    score = Column(Float, nullable=False, server_default=text("0"))
    reason = Column(Text, nullable=True)

    # State
    notified = Column(Boolean, nullable=False, server_default=text("false"))
    status = Column(
        String, nullable=False, server_default=text("'waiting'")
    )  # waiting, notified, promoted, withdrawn

    created_at = Column(UTCDateTime, nullable=False)

    # Promotion tracking
    notified_at = Column(UTCDateTime, nullable=True)
    offered_resource_id = Column(String, nullable=True)
    reservation_id = Column(String, nullable=True)
    lapse_count = Column(Integer, nullable=False, server_default=text("0"))

    updated_at = Column(UTCDateTime, nullable=True)

    __table_args__ = (
        # Ranking: waiting entries for a bucket
        Index("ix_wl_bucket_status", "date", "start_time", "end_time", "status"),
        Index("ix_wl_resource_status", "resource_id", "status"),
        # Grace-window sweep
        Index("ix_wl_status_notified_at", "status", "notified_at"),
    )
