# tests/utils/test_clock.py
from datetime import datetime, timedelta, timezone

import pytest

from reservation_scheduler.core.clock import Clock, ManualClock, SystemClock


def test_manual_clock_only_moves_when_told():
    clock = ManualClock(datetime(2024, 1, 1, 12, 0))
    assert clock.now() == datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
    assert clock.now() == clock.now()

    clock.advance(hours=2)
    assert clock.now() == datetime(2024, 1, 1, 14, 0, tzinfo=timezone.utc)
    clock.advance(timedelta(minutes=30))
    assert clock.now().minute == 30


def test_manual_clock_refuses_to_go_backwards():
    clock = ManualClock(datetime(2024, 1, 1, tzinfo=timezone.utc))
    with pytest.raises(ValueError):
        clock.advance(timedelta(seconds=-1))


def test_system_clock_is_utc():
    assert SystemClock().now().tzinfo == timezone.utc


def test_clock_base_is_abstract():
    with pytest.raises(TypeError):
        Clock()
