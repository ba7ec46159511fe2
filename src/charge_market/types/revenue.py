# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Revenue and demand types for the charge market.

RevenuePeriod is the per-station, per-day rollup written by completions and
by the pricer's auto-pricing events. DemandSnapshot is the reduced view of
that history consumed by the pricing engine.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from .fields import dump_date, load_date, to_decimal

HOURS_PER_DAY = 24


def _zero_hours() -> tuple[int, ...]:
    return (0,) * HOURS_PER_DAY


@dataclass
class RevenuePeriod:
    """
    Per-station, per-day revenue rollup.

    Writes for the same (station_id, day) accumulate rather than overwrite.
    hourly_sessions carries the count of completed sessions per hour-of-day
    (by session start time), which gives the demand snapshot the hourly
    resolution a daily rollup alone cannot provide.

    Attributes:
        station_id: Station the period belongs to
        day: UTC calendar day
        sessions_count: Completed sessions
        total_kwh: Energy delivered
        total_revenue: Revenue of completed sessions
        auto_pricing_events: Number of dynamic price computations
        hourly_sessions: 24 counters indexed by hour-of-day
    """

    station_id: str
    day: date
    sessions_count: int = 0
    total_kwh: Decimal = Decimal(0)
    total_revenue: Decimal = Decimal(0)
    auto_pricing_events: int = 0
    hourly_sessions: tuple[int, ...] = field(default_factory=_zero_hours)

    def __post_init__(self) -> None:
        self.total_kwh = to_decimal(self.total_kwh)
        self.total_revenue = to_decimal(self.total_revenue)
        self.hourly_sessions = tuple(int(v) for v in self.hourly_sessions)
        if len(self.hourly_sessions) != HOURS_PER_DAY:
            raise ValueError("hourly_sessions must have 24 entries")

    @property
    def has_hourly_data(self) -> bool:
        return any(self.hourly_sessions)

    def to_dict(self) -> dict[str, str]:
        """Serialise to a flat string mapping for backend storage."""
        data = {
            "station_id": self.station_id,
            "day": dump_date(self.day),
            "sessions_count": str(self.sessions_count),
            "total_kwh": str(self.total_kwh),
            "total_revenue": str(self.total_revenue),
            "auto_pricing_events": str(self.auto_pricing_events),
        }
        for hour, count in enumerate(self.hourly_sessions):
            data[f"h{hour}"] = str(count)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RevenuePeriod":
        """Rebuild a RevenuePeriod from a mapping produced by to_dict()."""
        return cls(
            station_id=data["station_id"],
            day=load_date(data["day"]),
            sessions_count=int(data.get("sessions_count") or 0),
            total_kwh=to_decimal(data.get("total_kwh") or 0),
            total_revenue=to_decimal(data.get("total_revenue") or 0),
            auto_pricing_events=int(data.get("auto_pricing_events") or 0),
            hourly_sessions=tuple(
                int(data.get(f"h{hour}") or 0) for hour in range(HOURS_PER_DAY)
            ),
        )


@dataclass
class DemandSnapshot:
    """
    Demand inputs for the pricing engine.

    Attributes:
        station_id: Station the snapshot describes
        as_of: Reference timestamp of the snapshot
        occupancy_rate: completed / all sessions created in the trailing window
            (0 when there were none)
        total_sessions: Sessions created in the trailing window
        completed_sessions: Of those, sessions that reached COMPLETED
        hourly_averages: Average completed sessions per hour-of-day over the
            revenue history
    """

    station_id: str
    as_of: datetime
    occupancy_rate: Decimal = Decimal(0)
    total_sessions: int = 0
    completed_sessions: int = 0
    hourly_averages: tuple[Decimal, ...] = field(
        default_factory=lambda: (Decimal(0),) * HOURS_PER_DAY
    )

    def __post_init__(self) -> None:
        self.occupancy_rate = to_decimal(self.occupancy_rate)
        self.hourly_averages = tuple(to_decimal(v) for v in self.hourly_averages)
        if len(self.hourly_averages) != HOURS_PER_DAY:
            raise ValueError("hourly_averages must have 24 entries")

    @property
    def all_hours_average(self) -> Decimal:
        """Mean of the 24 hourly averages."""
        return sum(self.hourly_averages, Decimal(0)) / HOURS_PER_DAY

    @property
    def has_hourly_signal(self) -> bool:
        return self.all_hours_average > 0

    @property
    def is_empty(self) -> bool:
        """No recent sessions and no hourly history: nothing to adjust on."""
        return self.total_sessions == 0 and not self.has_hourly_signal

    @classmethod
    def empty(cls, station_id: str, as_of: datetime) -> "DemandSnapshot":
        return cls(station_id=station_id, as_of=as_of)


__all__ = [
    "HOURS_PER_DAY",
    "DemandSnapshot",
    "RevenuePeriod",
]
