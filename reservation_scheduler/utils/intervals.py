# reservation_scheduler/utils/intervals.py
"""
Half-open interval arithmetic on (date, start time, end time) slots.

A slot [start, end) on a given date. Two slots overlap iff they share a date
and ``a.start < b.end and b.start < a.end``; slots that only touch at a
boundary (``a.end == b.start``) do not overlap.
"""

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Union

from reservation_scheduler.core.exceptions import ValidationError

TimeLike = Union[time, str]
DateLike = Union[date, str]


def parse_time(value: TimeLike) -> time:
    """Accept ``time`` objects or 'HH:MM' / 'HH:MM:SS' strings."""
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid time value: {value!r}") from e


def parse_date(value: DateLike) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid date value: {value!r}") from e


@dataclass(frozen=True, order=True)
class Interval:
    date: date
    start: time
    end: time

    @classmethod
    def of(cls, on: DateLike, start: TimeLike, end: TimeLike) -> "Interval":
        """Build and validate an interval from loose inputs."""
        interval = cls(parse_date(on), parse_time(start), parse_time(end))
        interval.validate()
        return interval

    def validate(self) -> None:
        if self.start >= self.end:
            raise ValidationError(
                f"Interval start {self.start.isoformat()} must be before "
                f"end {self.end.isoformat()}"
            )

    def overlaps(self, other: "Interval") -> bool:
        return overlaps(self, other)

    def __str__(self) -> str:
        return (
            f"{self.date.isoformat()} "
            f"{self.start.isoformat(timespec='minutes')}-"
            f"{self.end.isoformat(timespec='minutes')}"
        )


def times_overlap(start_a: time, end_a: time, start_b: time, end_b: time) -> bool:
    """Half-open overlap of two same-day time ranges."""
    return start_a < end_b and start_b < end_a


def overlaps(a: Interval, b: Interval) -> bool:
    if a.date != b.date:
        return False
    return times_overlap(a.start, a.end, b.start, b.end)

