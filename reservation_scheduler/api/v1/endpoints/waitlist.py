# reservation_scheduler/api/v1/endpoints/waitlist.py
"""Priority waitlist endpoints."""
import logging
from datetime import date, time, timedelta
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from reservation_scheduler.api import deps
from reservation_scheduler.core.exceptions import SchedulerError
from reservation_scheduler.schemas.reservation import (
    RankedWaitlistResponse,
    TemporaryReservation,
    WaitlistClaimRequest,
    WaitlistEntry,
    WaitlistJoinRequest,
    WaitlistOfferRequest,
    WaitlistPositionResponse,
    WaitlistStatistics,
    WaitlistStatus,
)
from reservation_scheduler.services.priority_queue import PriorityQueueEngine
from reservation_scheduler.services.reservation_lifecycle import (
    ReservationLifecycleManager,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/waitlist", tags=["Waitlist"])


@router.post("", response_model=WaitlistEntry, status_code=status.HTTP_201_CREATED)
def join_waitlist(
    request: WaitlistJoinRequest,
    queue: PriorityQueueEngine = Depends(deps.get_queue),
):
    try:
        return queue.join(
            request.requester_id,
            request.resource_id,
            request.date,
            request.start_time,
            request.end_time,
            reason=request.reason,
        )
    except SchedulerError as e:
        raise deps.to_http_error(e)


@router.get("", response_model=List[WaitlistEntry])
def list_entries(
    requester_id: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    status_filter: Optional[WaitlistStatus] = Query(None, alias="status"),
    on: Optional[date] = Query(None, alias="date"),
    order_by: str = Query("created_at", pattern="^(created_at|priority)$"),
    queue: PriorityQueueEngine = Depends(deps.get_queue),
):
    return queue.list_entries(
        order_by=order_by,
        requester_id=requester_id,
        resource_id=resource_id,
        status=status_filter,
        on=on,
    )


@router.get("/stats", response_model=WaitlistStatistics)
def waitlist_statistics(
    resource_id: Optional[str] = Query(None),
    on: Optional[date] = Query(None, alias="date"),
    queue: PriorityQueueEngine = Depends(deps.get_queue),
):
    return queue.statistics(resource_id=resource_id, on=on)


@router.get("/rank", response_model=RankedWaitlistResponse)
def rank_waitlist(
    on: date = Query(..., alias="date"),
    start_time: time = Query(...),
    end_time: time = Query(...),
    resource_id: Optional[str] = Query(None),
    queue: PriorityQueueEngine = Depends(deps.get_queue),
):
    """Waiting entries for a bucket in promotion order, with fresh scores."""
    try:
        return RankedWaitlistResponse(
            entries=queue.rank(resource_id, on, start_time, end_time)
        )
    except SchedulerError as e:
        raise deps.to_http_error(e)


@router.get("/{entry_id}", response_model=WaitlistPositionResponse)
def get_entry(
    entry_id: str,
    queue: PriorityQueueEngine = Depends(deps.get_queue),
):
    try:
        return WaitlistPositionResponse(
            entry=queue.get(entry_id), queue_position=queue.queue_position(entry_id)
        )
    except SchedulerError as e:
        raise deps.to_http_error(e)


@router.delete("/{entry_id}", response_model=WaitlistEntry)
def withdraw_entry(
    entry_id: str,
    queue: PriorityQueueEngine = Depends(deps.get_queue),
):
    try:
        return queue.withdraw(entry_id)
    except SchedulerError as e:
        raise deps.to_http_error(e)


@router.post(
    "/{entry_id}/claim",
    response_model=TemporaryReservation,
    status_code=status.HTTP_201_CREATED,
)
def claim_entry(
    entry_id: str,
    request: Optional[WaitlistClaimRequest] = Body(None),
    lifecycle: ReservationLifecycleManager = Depends(deps.get_lifecycle),
):
    """Turn a promotion into a hold on the offered slot."""
    ttl = None
    if request is not None and request.ttl_hours:
        ttl = timedelta(hours=request.ttl_hours)
    try:
        return lifecycle.claim(entry_id, ttl=ttl)
    except SchedulerError as e:
        raise deps.to_http_error(e)


@router.post("/{entry_id}/notify", response_model=WaitlistEntry)
def notify_entry(
    entry_id: str,
    request: Optional[WaitlistOfferRequest] = Body(None),
    queue: PriorityQueueEngine = Depends(deps.get_queue),
):
    """Offer a slot to one waiting entry ahead of the automatic promotion."""
    request = request or WaitlistOfferRequest()
    try:
        return queue.offer(entry_id, resource_id=request.resource_id, reason=request.reason)
    except SchedulerError as e:
        raise deps.to_http_error(e)
