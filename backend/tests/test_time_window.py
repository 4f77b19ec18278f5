"""Tests for the sync time window gate."""

from datetime import datetime

import pytest

from replicator.schemas.sync import TimeWindow
from replicator.services.time_window import is_within_window, window_open


def at(hour: int, minute: int) -> datetime:
    return datetime(2026, 3, 2, hour, minute)


class TestBoundaries:
    @pytest.mark.parametrize("hour,minute,expected", [
        (0, 0, True),
        (3, 30, True),
        (5, 59, True),
        (6, 0, True),
        (6, 1, False),
        (23, 59, False),
    ])
    def test_default_night_window(self, hour, minute, expected):
        assert is_within_window(at(hour, minute), "00:00", "06:00") is expected

    def test_single_minute_window(self):
        assert is_within_window(at(12, 0), "12:00", "12:00") is True
        assert is_within_window(at(12, 1), "12:00", "12:00") is False

    def test_seconds_are_ignored(self):
        assert is_within_window(datetime(2026, 3, 2, 6, 0, 59), "00:00", "06:00") is True

    def test_unpadded_hours(self):
        assert is_within_window(at(7, 15), "7:00", "8:00") is True


class TestMonotonicity:
    def test_once_outside_stays_outside_for_rest_of_day(self):
        results = [is_within_window(at(h, m), "01:00", "04:30") for h in range(24) for m in range(60)]
        first_open = results.index(True)
        last_open = len(results) - 1 - results[::-1].index(True)
        assert all(results[first_open:last_open + 1])
        assert not any(results[last_open + 1:])


def test_window_open_uses_model():
    window = TimeWindow(start="22:00", end="23:00")
    assert window_open(at(22, 30), window) is True
    assert window_open(at(3, 0), window) is False
