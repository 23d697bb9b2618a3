# reservation_scheduler/api/deps.py
from fastapi import HTTPException, status

from reservation_scheduler.core.exceptions import (
    ConflictError,
    InvalidStateError,
    NotFoundError,
    SchedulerError,
    StaleStateError,
    ValidationError,
)
from reservation_scheduler.schemas.reservation import ConflictResponse
from reservation_scheduler.services import factory


# Dependencies are thin wrappers so tests can swap them via dependency_overrides
def get_lifecycle():
    return factory.get_lifecycle()


def get_queue():
    return factory.get_queue()


def get_sweeper():
    return factory.get_sweeper()


def to_http_error(exc: SchedulerError) -> HTTPException:
    """Translate a core error into the matching HTTP response."""
    if isinstance(exc, ValidationError):
        return HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc)
        )
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    if isinstance(exc, ConflictError):
        report = exc.report
        body = ConflictResponse(
            detail=str(exc),
            resource_id=report.resource_id if report else None,
            blocking_reservation_ids=[r.id for r in report.reservations] if report else [],
            blocking_booking_ids=[b.id for b in report.bookings] if report else [],
            holder_ids=exc.holder_ids,
        )
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT, detail=body.model_dump()
        )
    if isinstance(exc, StaleStateError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"{exc}. Re-read the record and retry.",
        )
    if isinstance(exc, InvalidStateError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"detail": str(exc), "current_state": exc.current_state},
        )
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc)
    )
