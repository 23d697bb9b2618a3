# reservation_scheduler/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from reservation_scheduler.api.v1.api import api_router
from reservation_scheduler.core.config import settings
from reservation_scheduler.core.kafka_producer import close_kafka_singleton
from reservation_scheduler.core.logging_config import configure_logging
from reservation_scheduler.scheduler import init_scheduler, shutdown_scheduler
from reservation_scheduler.services.factory import get_sweeper

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    logger.info("Reservation scheduler starting up...")
    # Builds the store and creates missing tables
    get_sweeper()
    if settings.SCHEDULER_ENABLED:
        init_scheduler()
    yield
    logger.info("Reservation scheduler shutting down...")
    shutdown_scheduler()
    close_kafka_singleton()


app = FastAPI(
    title="Reservation Scheduler",
    version="1.0.0",
    description="""
        Temporary holds on venue time slots with a priority waitlist.

        * **Holds**: time-boxed exclusive reservations with extension, conversion and release
        * **Waitlist**: score-ranked queue promoted whenever a slot frees up
        * **Sweep**: background expiry of overdue holds and expiring-soon reminders
        """,
    lifespan=lifespan,
)

app.include_router(api_router, prefix="/api/v1")


@app.get("/")
def read_root():
    return {"status": "Reservation Scheduler is running"}
