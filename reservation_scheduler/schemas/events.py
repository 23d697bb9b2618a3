# reservation_scheduler/schemas/events.py
"""
Notification events emitted by the scheduler core.

A closed set of variants, each with a fixed payload shape. Every variant
carries the requester, the resource (None for resource-less holds/entries),
the interval and a human-readable reason. ``event_type`` is the tag.
"""

import datetime as dt
from datetime import datetime
from typing import Literal, Optional, Union

from pydantic import BaseModel, Field

from reservation_scheduler.utils.intervals import Interval


class IntervalPayload(BaseModel):
    date: dt.date
    start_time: dt.time
    end_time: dt.time

    @classmethod
    def from_interval(cls, interval: Interval) -> "IntervalPayload":
        return cls(date=interval.date, start_time=interval.start, end_time=interval.end)


class _EventBase(BaseModel):
    requester_id: str
    resource_id: Optional[str] = None
    interval: IntervalPayload
    reason: str
    occurred_at: datetime

    model_config = {"frozen": True}


class ReservationExpiringSoon(_EventBase):
    event_type: Literal["reservation.expiring_soon"] = "reservation.expiring_soon"
    reservation_id: str
    deadline: datetime


class ReservationExpired(_EventBase):
    event_type: Literal["reservation.expired"] = "reservation.expired"
    reservation_id: str
    deadline: datetime


class ReservationConverted(_EventBase):
    event_type: Literal["reservation.converted"] = "reservation.converted"
    reservation_id: str
    booking_ref: str


class WaitlistPromoted(_EventBase):
    event_type: Literal["waitlist.promoted"] = "waitlist.promoted"
    entry_id: str
    score: float
    claim_by: Optional[datetime] = None


NotificationEvent = Union[
    ReservationExpiringSoon,
    ReservationExpired,
    ReservationConverted,
    WaitlistPromoted,
]


class EventEnvelope(BaseModel):
    """Wrapper used when an event has to be parsed back from JSON."""

    event: NotificationEvent = Field(..., discriminator="event_type")


EVENT_TYPES = (
    "reservation.expiring_soon",
    "reservation.expired",
    "reservation.converted",
    "waitlist.promoted",
)
