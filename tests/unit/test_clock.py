"""Unit tests for clock implementations."""

from datetime import datetime, timedelta, timezone

import pytest

from charge_market.clock import ManualClock, SystemClock
from charge_market.protocols import ClockProtocol


class TestSystemClock:
    def test_returns_aware_utc(self):
        now = SystemClock().now()
        assert now.tzinfo is not None
        assert now.utcoffset() == timedelta(0)

    def test_satisfies_protocol(self):
        assert isinstance(SystemClock(), ClockProtocol)


class TestManualClock:
    def test_starts_at_given_time(self, t0):
        assert ManualClock(t0).now() == t0

    def test_naive_start_is_treated_as_utc(self):
        clock = ManualClock(datetime(2026, 1, 1, 12, 0))
        assert clock.now() == datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def test_advance(self, t0):
        clock = ManualClock(t0)
        assert clock.advance(seconds=301) == t0 + timedelta(seconds=301)
        clock.advance(minutes=1)
        assert clock.now() == t0 + timedelta(seconds=361)

    def test_cannot_move_backwards(self, t0):
        clock = ManualClock(t0)
        with pytest.raises(ValueError, match="backwards"):
            clock.advance(seconds=-1)

    def test_set(self, t0):
        clock = ManualClock(t0)
        later = t0 + timedelta(days=1)
        clock.set(later)
        assert clock.now() == later

    def test_satisfies_protocol(self, t0):
        assert isinstance(ManualClock(t0), ClockProtocol)
