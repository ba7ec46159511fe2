# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation types for the charge market.

A reservation is the confirmed booking created from a soft-locked session.
Its price is frozen at confirmation time and never follows later dynamic
price changes on the session.
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Any

from .fields import (
    MONEY_QUANTUM,
    dump_bool,
    dump_datetime,
    ensure_utc,
    load_bool,
    load_datetime,
    to_decimal,
    utcnow,
)


class ReservationStatus(Enum):
    """
    Lifecycle states of a reservation, mirroring a subset of the session's.

    PENDING is the short-lived state between writing the reservation record
    and committing the session's RESERVED -> ACTIVE transition.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_open(self) -> bool:
        """Whether the reservation still references a live booking."""
        return self in (
            ReservationStatus.PENDING,
            ReservationStatus.CONFIRMED,
            ReservationStatus.ACTIVE,
        )


def compute_total_price(
    kwh_requested: Decimal, price_per_kwh: Decimal, credits_used: Decimal
) -> Decimal:
    """
    Total price of a booking: billable kWh times the frozen unit price.

    Free kWh credits are deducted from the requested energy before pricing
    and the result is rounded half-up to cents.
    """
    billable = max(kwh_requested - credits_used, Decimal(0))
    return (billable * price_per_kwh).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass
class Reservation:
    """
    A confirmed booking of a session by a user.

    Attributes:
        reservation_id: Unique identifier
        session_id: The session this booking was created from
        user_id: The driver who holds the booking
        kwh_requested: Energy requested
        price_per_kwh: Unit price frozen at confirmation
        total_price: Price of the billable energy
        credits_used: Free kWh credits applied
        is_priority: Whether the booking was made with priority access
        status: Current lifecycle status
        created_at: Creation timestamp (UTC)
        completed_at: Completion timestamp, None until completed
    """

    reservation_id: str
    session_id: str
    user_id: str
    kwh_requested: Decimal
    price_per_kwh: Decimal
    total_price: Decimal
    credits_used: Decimal = Decimal(0)
    is_priority: bool = False
    status: ReservationStatus = ReservationStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None

    def __post_init__(self) -> None:
        self.kwh_requested = to_decimal(self.kwh_requested)
        self.price_per_kwh = to_decimal(self.price_per_kwh)
        self.total_price = to_decimal(self.total_price)
        self.credits_used = to_decimal(self.credits_used)
        self.status = ReservationStatus(self.status)
        self.created_at = ensure_utc(self.created_at)
        if self.completed_at is not None:
            self.completed_at = ensure_utc(self.completed_at)

    def to_dict(self) -> dict[str, str]:
        """Serialise to a flat string mapping for backend storage."""
        return {
            "reservation_id": self.reservation_id,
            "session_id": self.session_id,
            "user_id": self.user_id,
            "kwh_requested": str(self.kwh_requested),
            "price_per_kwh": str(self.price_per_kwh),
            "total_price": str(self.total_price),
            "credits_used": str(self.credits_used),
            "is_priority": dump_bool(self.is_priority),
            "status": self.status.value,
            "created_at": dump_datetime(self.created_at),
            "completed_at": dump_datetime(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Reservation":
        """Rebuild a Reservation from a mapping produced by to_dict()."""
        return cls(
            reservation_id=data["reservation_id"],
            session_id=data["session_id"],
            user_id=data["user_id"],
            kwh_requested=to_decimal(data["kwh_requested"]),
            price_per_kwh=to_decimal(data["price_per_kwh"]),
            total_price=to_decimal(data["total_price"]),
            credits_used=to_decimal(data.get("credits_used") or 0),
            is_priority=load_bool(data.get("is_priority", "0")),
            status=ReservationStatus(data["status"]),
            created_at=load_datetime(data.get("created_at")) or utcnow(),
            completed_at=load_datetime(data.get("completed_at")),
        )


__all__ = [
    "Reservation",
    "ReservationStatus",
    "compute_total_price",
]
