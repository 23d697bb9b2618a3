# reservation_scheduler/schemas/reservation.py
import datetime as dt
from datetime import datetime, time
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, model_validator

from reservation_scheduler.utils.intervals import Interval


# --- Enums ---

class ReservationStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    CONVERTED = "converted"
    RELEASED = "released"


class WaitlistStatus(str, Enum):
    WAITING = "waiting"
    NOTIFIED = "notified"
    PROMOTED = "promoted"
    WITHDRAWN = "withdrawn"


class BookingStatus(str, Enum):
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


# --- Records ---

class SlotFields(BaseModel):
    """Common (date, start, end) triple shared by holds, entries and bookings."""

    date: dt.date
    start_time: time
    end_time: time

    @property
    def interval(self) -> Interval:
        return Interval(self.date, self.start_time, self.end_time)


class TemporaryReservation(SlotFields):
    id: str
    requester_id: str
    resource_id: Optional[str] = None

    status: ReservationStatus = ReservationStatus.ACTIVE
    created_at: datetime
    deadline: datetime
    ttl_seconds: int
    extension_count: int = 0
    expiring_notice_sent: bool = False

    estimated_value: float = 0.0
    notes: Optional[str] = None

    converted_at: Optional[datetime] = None
    booking_ref: Optional[str] = None
    released_at: Optional[datetime] = None
    release_reason: Optional[str] = None
    expired_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class WaitlistEntry(SlotFields):
    id: str
    requester_id: str
    resource_id: Optional[str] = None  # None = any resource for the interval

    score: float = 0.0
    reason: Optional[str] = None
    notified: bool = False
    status: WaitlistStatus = WaitlistStatus.WAITING
    created_at: datetime

    notified_at: Optional[datetime] = None
    offered_resource_id: Optional[str] = None
    reservation_id: Optional[str] = None
    lapse_count: int = 0
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

    @property
    def is_wildcard(self) -> bool:
        return self.resource_id is None


class Booking(SlotFields):
    id: str
    resource_id: str
    reference: str
    source_reservation_id: Optional[str] = None
    status: BookingStatus = BookingStatus.CONFIRMED
    created_at: datetime

    model_config = {"from_attributes": True}


class RequesterHistory(BaseModel):
    """Hold and conversion counts feeding the performance bonus."""

    requester_id: str
    holds: int = 0
    conversions: int = 0

    @property
    def conversion_rate(self) -> float:
        if self.holds <= 0:
            return 0.0
        return min(self.conversions / self.holds, 1.0)


class RequesterScore(BaseModel):
    requester_id: str
    base: float = 100.0
    performance_bonus: float = 0.0
    experience_bonus: float = 0.0

    @property
    def total(self) -> float:
        return self.base + self.performance_bonus + self.experience_bonus


class ReservationStatistics(BaseModel):
    total: int = 0
    by_status: dict = Field(default_factory=dict)
    total_estimated_value: float = 0.0
    expiring_within_24h: int = 0
    conversion_rate: int = 0  # percent, rounded


class WaitlistStatistics(BaseModel):
    total: int = 0
    by_status: dict = Field(default_factory=dict)
    waiting_by_resource: dict = Field(default_factory=dict)  # "any" = wildcard
    mean_wait_hours: float = 0.0
    top_score: Optional[float] = None


# --- API request schemas ---

class SlotRequest(BaseModel):
    date: dt.date
    start_time: time
    end_time: time

    @model_validator(mode="after")
    def check_end_after_start(self) -> "SlotRequest":
        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class HoldCreateRequest(SlotRequest):
    requester_id: str = Field(..., min_length=1)
    resource_id: Optional[str] = None
    ttl_hours: Optional[float] = Field(None, gt=0)
    estimated_value: float = Field(0.0, ge=0)
    notes: Optional[str] = Field(None, max_length=2000)


class HoldConvertRequest(BaseModel):
    booking_ref: str = Field(..., min_length=1)


class HoldReleaseRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=1000)


class WaitlistJoinRequest(SlotRequest):
    requester_id: str = Field(..., min_length=1)
    resource_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=1000)


class WaitlistClaimRequest(BaseModel):
    ttl_hours: Optional[float] = Field(None, gt=0)


class WaitlistOfferRequest(BaseModel):
    resource_id: Optional[str] = None
    reason: Optional[str] = Field(None, max_length=1000)


# --- API response schemas ---

class ConflictResponse(BaseModel):
    detail: str
    resource_id: Optional[str] = None
    blocking_reservation_ids: List[str] = []
    blocking_booking_ids: List[str] = []
    holder_ids: List[str] = []


class RankedWaitlistResponse(BaseModel):
    entries: List[WaitlistEntry]


class WaitlistPositionResponse(BaseModel):
    entry: WaitlistEntry
    queue_position: Optional[int] = None
