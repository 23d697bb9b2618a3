# reservation_scheduler/api/v1/endpoints/scheduler.py
"""Operational endpoints for the background sweep."""
from fastapi import APIRouter, Depends

from reservation_scheduler.api import deps
from reservation_scheduler.background_tasks.reservation_tasks import ReservationSweeper
from reservation_scheduler.scheduler import get_scheduler_status

router = APIRouter(prefix="/scheduler", tags=["Scheduler"])


@router.get("/status")
def scheduler_status():
    return get_scheduler_status()


@router.post("/sweep")
def run_sweep(sweeper: ReservationSweeper = Depends(deps.get_sweeper)):
    """Run one sweep now, outside the regular interval."""
    return sweeper.run_once().to_dict()
