# reservation_scheduler/services/factory.py
"""
Process-wide wiring of the scheduler components.

The API handlers and the background sweep must share one lifecycle manager:
its per-slot locks only serialize callers that use the same instance.
"""

from functools import lru_cache

from reservation_scheduler.background_tasks.reservation_tasks import ReservationSweeper
from reservation_scheduler.core.clock import SystemClock
from reservation_scheduler.crud.crud_reservation_store import SQLReservationStore
from reservation_scheduler.crud.store import ReservationStore
from reservation_scheduler.db.init_db import init_db
from reservation_scheduler.db.session import SessionLocal, engine
from reservation_scheduler.services.priority_queue import PriorityQueueEngine
from reservation_scheduler.services.reservation_lifecycle import (
    ReservationLifecycleManager,
)
from reservation_scheduler.utils.notifications import (
    NotificationDispatcher,
    get_notification_dispatcher,
)


@lru_cache
def get_store() -> ReservationStore:
    init_db(engine)
    return SQLReservationStore(SessionLocal)


@lru_cache
def get_dispatcher() -> NotificationDispatcher:
    return get_notification_dispatcher()


@lru_cache
def get_clock() -> SystemClock:
    return SystemClock()


@lru_cache
def get_queue() -> PriorityQueueEngine:
    return PriorityQueueEngine(get_store(), get_dispatcher(), get_clock())


@lru_cache
def get_lifecycle() -> ReservationLifecycleManager:
    return ReservationLifecycleManager(
        get_store(), get_queue(), get_dispatcher(), get_clock()
    )


@lru_cache
def get_sweeper() -> ReservationSweeper:
    return ReservationSweeper(get_lifecycle())
