# reservation_scheduler/api/v1/api.py

from fastapi import APIRouter
from reservation_scheduler.api.v1.endpoints import (
    reservations,
    waitlist,
    scheduler,
)

# This is the main router for the v1 API.
api_router = APIRouter()

api_router.include_router(reservations.router)
api_router.include_router(waitlist.router)
api_router.include_router(scheduler.router)
