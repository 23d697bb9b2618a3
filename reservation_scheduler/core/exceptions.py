# reservation_scheduler/core/exceptions.py
"""
Error taxonomy shared by every component.

- ValidationError: malformed input, rejected before any state mutation.
- ConflictError: overlap found when placing a hold; carries the report.
- DuplicateConflictError: the store's own overlap guard tripped.
- InvalidStateError: transition not allowed from the current state.
- StaleStateError: compare-and-swap lost; safe to retry once after a re-read.
- NotFoundError: unknown id.
- NotificationError: the dispatcher could not hand off an event.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from reservation_scheduler.services.conflict_detector import ConflictReport


class SchedulerError(Exception):
    """Base class for every error raised by the scheduler core."""


class ValidationError(SchedulerError):
    pass


class ConflictError(SchedulerError):
    def __init__(self, message: str, report: Optional["ConflictReport"] = None):
        super().__init__(message)
        self.report = report

    @property
    def holder_ids(self) -> list[str]:
        return self.report.holder_ids if self.report else []


class DuplicateConflictError(ConflictError):
    pass


class InvalidStateError(SchedulerError):
    def __init__(self, message: str, current_state: Optional[str] = None):
        super().__init__(message)
        self.current_state = current_state


class StaleStateError(SchedulerError):
    def __init__(self, record_id: str, expected_state: str):
        super().__init__(
            f"Record {record_id} is no longer in state '{expected_state}'"
        )
        self.record_id = record_id
        self.expected_state = expected_state


class NotFoundError(SchedulerError):
    def __init__(self, kind: str, record_id: str):
        super().__init__(f"{kind} {record_id} not found")
        self.kind = kind
        self.record_id = record_id


class NotificationError(SchedulerError):
    pass
