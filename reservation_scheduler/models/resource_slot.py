# reservation_scheduler/models/resource_slot.py
from sqlalchemy import Column, Date, Integer, String, text
from reservation_scheduler.db.base_class import Base


class ResourceSlot(Base):
    """
    One row per (resource, day) that has ever been held.

    Inserting a hold first bumps ``version`` on its row, which takes the row's
    write lock. Concurrent inserts for the same resource and day therefore
    queue up behind each other, across processes, before the overlap check.
    """

    __tablename__ = "resource_slots"

    resource_id = Column(String, primary_key=True)
    date = Column(Date, primary_key=True)
    version = Column(Integer, nullable=False, server_default=text("0"))
