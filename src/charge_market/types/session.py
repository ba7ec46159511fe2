# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Session types for the charge market.

A session is a sellable, time-boxed slice of charging capacity offered by a
station over [start_time, end_time). Its status moves through the lifecycle
encoded in SessionStatus; only the reservation manager and the expiry
reconciler mutate it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any

from .fields import (
    dump_datetime,
    dump_optional,
    ensure_utc,
    load_datetime,
    load_optional,
    to_decimal,
    to_optional_decimal,
    utcnow,
)


class SessionStatus(Enum):
    """
    Lifecycle states of a session.

    Transitions:
        * AVAILABLE -> RESERVED (reserve), CANCELLED (withdrawn by operator)
        * RESERVED -> ACTIVE (confirm), CANCELLED (cancel), AVAILABLE (expiry)
        * ACTIVE -> COMPLETED (complete), CANCELLED (cancel)
        * COMPLETED, CANCELLED are terminal
    """

    AVAILABLE = "available"
    RESERVED = "reserved"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.CANCELLED)

    def can_transition_to(self, target: "SessionStatus") -> bool:
        """Check whether the lifecycle allows moving from this status to target."""
        return target in _TRANSITIONS[self]


_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.AVAILABLE: frozenset(
        {SessionStatus.RESERVED, SessionStatus.CANCELLED}
    ),
    SessionStatus.RESERVED: frozenset(
        {SessionStatus.ACTIVE, SessionStatus.CANCELLED, SessionStatus.AVAILABLE}
    ),
    SessionStatus.ACTIVE: frozenset(
        {SessionStatus.COMPLETED, SessionStatus.CANCELLED}
    ),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


@dataclass
class Session:
    """
    A sellable slice of charging capacity at a station.

    Attributes:
        session_id: Unique identifier of the session
        station_id: Owning station (fixed for the session's lifetime)
        host_id: Host offering the capacity
        start_time: Start of the charging window (inclusive)
        end_time: End of the charging window (exclusive)
        available_kw: Capacity offered
        base_price_per_kwh: Price before dynamic adjustment
        dynamic_price_per_kwh: Price stamped by dynamic pricing, None until it ran
        status: Current lifecycle status
        reserved_by: Soft-lock holder, set iff status is RESERVED
        reserved_until: Soft-lock expiry, set iff status is RESERVED
        created_at: Creation timestamp (UTC)
        updated_at: Timestamp of the last transition (UTC)

    Raises:
        ValueError: If the holder/expiry pair invariant is violated
    """

    session_id: str
    station_id: str
    host_id: str
    start_time: datetime
    end_time: datetime
    available_kw: Decimal
    base_price_per_kwh: Decimal
    dynamic_price_per_kwh: Decimal | None = None
    status: SessionStatus = SessionStatus.AVAILABLE
    reserved_by: str | None = None
    reserved_until: datetime | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self) -> None:
        self.available_kw = to_decimal(self.available_kw)
        self.base_price_per_kwh = to_decimal(self.base_price_per_kwh)
        self.dynamic_price_per_kwh = to_optional_decimal(self.dynamic_price_per_kwh)
        self.status = SessionStatus(self.status)
        self.start_time = ensure_utc(self.start_time)
        self.end_time = ensure_utc(self.end_time)
        self.created_at = ensure_utc(self.created_at)
        self.updated_at = ensure_utc(self.updated_at)
        if self.reserved_until is not None:
            self.reserved_until = ensure_utc(self.reserved_until)

        if self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        if (self.reserved_by is None) != (self.reserved_until is None):
            raise ValueError("reserved_by and reserved_until must be set together")
        if (self.reserved_by is not None) != (self.status == SessionStatus.RESERVED):
            raise ValueError("reserved_by/reserved_until must be set iff reserved")

    @property
    def duration_hours(self) -> Decimal:
        """Length of the charging window in hours."""
        seconds = (self.end_time - self.start_time).total_seconds()
        return to_decimal(seconds) / Decimal(3600)

    @property
    def effective_price_per_kwh(self) -> Decimal:
        """The dynamic price if one was stamped, otherwise the base price."""
        if self.dynamic_price_per_kwh is not None:
            return self.dynamic_price_per_kwh
        return self.base_price_per_kwh

    def is_hold_expired(self, now: datetime) -> bool:
        """Whether a soft-lock exists and its TTL has passed at ``now``."""
        return (
            self.status == SessionStatus.RESERVED
            and self.reserved_until is not None
            and now >= self.reserved_until
        )

    def seconds_remaining(self, now: datetime) -> float:
        """
        Seconds left on the soft-lock, for countdown display only.

        Returns 0.0 when the session is not held or the hold has lapsed.
        Expiry itself is enforced by confirm and the expiry reconciler.
        """
        if self.reserved_until is None:
            return 0.0
        return max(0.0, (self.reserved_until - now).total_seconds())

    def to_dict(self) -> dict[str, str]:
        """Serialise to a flat string mapping for backend storage."""
        return {
            "session_id": self.session_id,
            "station_id": self.station_id,
            "host_id": self.host_id,
            "start_time": dump_datetime(self.start_time),
            "end_time": dump_datetime(self.end_time),
            "available_kw": str(self.available_kw),
            "base_price_per_kwh": str(self.base_price_per_kwh),
            "dynamic_price_per_kwh": dump_optional(self.dynamic_price_per_kwh),
            "status": self.status.value,
            "reserved_by": dump_optional(self.reserved_by),
            "reserved_until": dump_datetime(self.reserved_until),
            "created_at": dump_datetime(self.created_at),
            "updated_at": dump_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Session":
        """Rebuild a Session from a mapping produced by to_dict()."""
        start_time = load_datetime(data["start_time"])
        end_time = load_datetime(data["end_time"])
        created_at = load_datetime(data.get("created_at")) or utcnow()
        updated_at = load_datetime(data.get("updated_at")) or created_at
        if start_time is None or end_time is None:
            raise ValueError("session record is missing start_time or end_time")
        return cls(
            session_id=data["session_id"],
            station_id=data["station_id"],
            host_id=data["host_id"],
            start_time=start_time,
            end_time=end_time,
            available_kw=to_decimal(data["available_kw"]),
            base_price_per_kwh=to_decimal(data["base_price_per_kwh"]),
            dynamic_price_per_kwh=to_optional_decimal(
                data.get("dynamic_price_per_kwh")
            ),
            status=SessionStatus(data.get("status") or SessionStatus.AVAILABLE.value),
            reserved_by=load_optional(data.get("reserved_by")),
            reserved_until=load_datetime(data.get("reserved_until")),
            created_at=created_at,
            updated_at=updated_at,
        )


__all__ = [
    "Session",
    "SessionStatus",
]
