# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Clock implementations.

SystemClock reads the wall clock. ManualClock only moves when told to,
which makes soft-lock expiry scenarios reproducible in tests and
simulations.
"""

from datetime import datetime, timedelta, timezone

from .types.fields import ensure_utc


class SystemClock:
    """Wall-clock time in UTC."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class ManualClock:
    """
    A clock that only advances explicitly.

    Example:
        >>> clock = ManualClock(datetime(2026, 1, 1, 8, 0, tzinfo=timezone.utc))
        >>> clock.advance(seconds=301)
        >>> clock.now().minute
        5
    """

    def __init__(self, start: datetime | None = None) -> None:
        self._now = ensure_utc(start) if start else datetime.now(timezone.utc)

    def now(self) -> datetime:
        return self._now

    def advance(self, seconds: float = 0.0, **kwargs: float) -> datetime:
        """Move the clock forward; accepts the same keywords as timedelta."""
        delta = timedelta(seconds=seconds, **kwargs)
        if delta < timedelta(0):
            raise ValueError("ManualClock cannot move backwards")
        self._now += delta
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)


__all__ = ["ManualClock", "SystemClock"]
