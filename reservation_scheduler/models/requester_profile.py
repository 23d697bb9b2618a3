# reservation_scheduler/models/requester_profile.py
from sqlalchemy import Column, String
from reservation_scheduler.db.base_class import Base
from reservation_scheduler.db.types import UTCDateTime


class RequesterProfile(Base):
    __tablename__ = "requester_profiles"

    requester_id = Column(String, primary_key=True)
    # Tenure source for the experience bonus
    joined_at = Column(UTCDateTime, nullable=False)
