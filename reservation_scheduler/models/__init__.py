# reservation_scheduler/models/__init__.py
# Import all models so Base.metadata knows every table before create_all

from reservation_scheduler.db.base_class import Base
from reservation_scheduler.models.temporary_reservation import TemporaryReservation
from reservation_scheduler.models.waitlist_entry import WaitlistEntry
from reservation_scheduler.models.booking import Booking
from reservation_scheduler.models.requester_profile import RequesterProfile
from reservation_scheduler.models.resource_slot import ResourceSlot
