"""
Test epoch and cycle arithmetic.
"""

from datetime import datetime, timedelta

import pytest

from holder_rewards.scheduler.epoch_clock import EpochClock, ensure_utc
from tests.fakes import utc


def test_first_cycle_of_the_day():
    position = EpochClock().position(utc(2024, 3, 1, 0, 0, 0))

    assert position.epoch == "2024-03-01"
    assert position.cycle == 1
    assert position.cycles_per_epoch == 288
    assert position.next_cycle_at == utc(2024, 3, 1, 0, 5, 0)


def test_cycle_numbering_within_day():
    clock = EpochClock()

    assert clock.position(utc(2024, 3, 1, 0, 4, 59)).cycle == 1
    assert clock.position(utc(2024, 3, 1, 0, 5, 0)).cycle == 2
    assert clock.position(utc(2024, 3, 1, 12, 0, 0)).cycle == 145


def test_last_cycle_and_rollover_to_next_epoch():
    clock = EpochClock()

    last = clock.position(utc(2024, 3, 1, 23, 59, 59))
    assert last.cycle == 288
    assert last.is_last_cycle
    assert last.next_cycle_at == utc(2024, 3, 2, 0, 0, 0)

    first = clock.position(utc(2024, 3, 2, 0, 0, 0))
    assert first.epoch == "2024-03-02"
    assert first.cycle == 1


def test_naive_time_is_treated_as_utc():
    clock = EpochClock()

    assert clock.position(datetime(2024, 3, 1, 0, 10)).cycle == 3
    assert ensure_utc(datetime(2024, 3, 1)).utcoffset() == timedelta(0)


def test_custom_span_uses_start_time_as_epoch_id():
    clock = EpochClock(interval_seconds=60, cycles_per_epoch=10)

    position = clock.position(utc(2024, 3, 1, 0, 12, 30))

    assert clock.span_seconds == 600
    assert position.epoch == "2024-03-01T00:10:00Z"
    assert position.cycle == 3


def test_seconds_until_next():
    now = utc(2024, 3, 1, 0, 3, 0)
    position = EpochClock().position(now)

    assert position.seconds_until_next(now) == 120
    assert position.seconds_until_next(now + timedelta(minutes=5)) == 0


def test_invalid_configuration():
    with pytest.raises(ValueError):
        EpochClock(interval_seconds=0)
