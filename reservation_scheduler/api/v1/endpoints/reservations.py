# reservation_scheduler/api/v1/endpoints/reservations.py
"""Temporary hold endpoints."""
import logging
from datetime import date, timedelta
from typing import List, Optional

from fastapi import APIRouter, Body, Depends, Query, status

from reservation_scheduler.api import deps
from reservation_scheduler.core.exceptions import SchedulerError
from reservation_scheduler.schemas.reservation import (
    HoldConvertRequest,
    HoldCreateRequest,
    HoldReleaseRequest,
    ReservationStatistics,
    ReservationStatus,
    TemporaryReservation,
)
from reservation_scheduler.services.reservation_lifecycle import (
    ReservationLifecycleManager,
)
from reservation_scheduler.utils.intervals import Interval

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reservations", tags=["Reservations"])


@router.post(
    "", response_model=TemporaryReservation, status_code=status.HTTP_201_CREATED
)
def create_hold(
    request: HoldCreateRequest,
    lifecycle: ReservationLifecycleManager = Depends(deps.get_lifecycle),
):
    """
    Place a temporary hold. Responds 409 with the blocking holders when the
    resource is already taken for an overlapping interval.
    """
    try:
        return lifecycle.request_hold(
            request.requester_id,
            request.resource_id,
            Interval(request.date, request.start_time, request.end_time),
            ttl=timedelta(hours=request.ttl_hours) if request.ttl_hours else None,
            estimated_value=request.estimated_value,
            notes=request.notes,
        )
    except SchedulerError as e:
        raise deps.to_http_error(e)


@router.get("", response_model=List[TemporaryReservation])
def list_holds(
    requester_id: Optional[str] = Query(None),
    resource_id: Optional[str] = Query(None),
    status_filter: Optional[ReservationStatus] = Query(None, alias="status"),
    on: Optional[date] = Query(None, alias="date"),
    lifecycle: ReservationLifecycleManager = Depends(deps.get_lifecycle),
):
    return lifecycle.list_reservations(
        requester_id=requester_id, resource_id=resource_id, status=status_filter, on=on
    )


@router.get("/stats", response_model=ReservationStatistics)
def hold_statistics(
    requester_id: Optional[str] = Query(None),
    lifecycle: ReservationLifecycleManager = Depends(deps.get_lifecycle),
):
    return lifecycle.statistics(requester_id=requester_id)


@router.get("/{reservation_id}", response_model=TemporaryReservation)
def get_hold(
    reservation_id: str,
    lifecycle: ReservationLifecycleManager = Depends(deps.get_lifecycle),
):
    try:
        return lifecycle.get(reservation_id)
    except SchedulerError as e:
        raise deps.to_http_error(e)


@router.post("/{reservation_id}/extend", response_model=TemporaryReservation)
def extend_hold(
    reservation_id: str,
    lifecycle: ReservationLifecycleManager = Depends(deps.get_lifecycle),
):
    try:
        return lifecycle.extend(reservation_id)
    except SchedulerError as e:
        raise deps.to_http_error(e)


@router.post("/{reservation_id}/convert", response_model=TemporaryReservation)
def convert_hold(
    reservation_id: str,
    request: HoldConvertRequest,
    lifecycle: ReservationLifecycleManager = Depends(deps.get_lifecycle),
):
    try:
        return lifecycle.convert(reservation_id, request.booking_ref)
    except SchedulerError as e:
        raise deps.to_http_error(e)


@router.post("/{reservation_id}/release", response_model=TemporaryReservation)
def release_hold(
    reservation_id: str,
    request: Optional[HoldReleaseRequest] = Body(None),
    lifecycle: ReservationLifecycleManager = Depends(deps.get_lifecycle),
):
    try:
        return lifecycle.release(
            reservation_id, reason=request.reason if request else None
        )
    except SchedulerError as e:
        raise deps.to_http_error(e)
