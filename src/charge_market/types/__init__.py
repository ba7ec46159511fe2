# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Domain types for the charge market.

Exports:
    Session, SessionStatus: Sellable charging capacity and its lifecycle
    Reservation, ReservationStatus: Confirmed bookings
    Station: Supply owner and per-station pricing configuration
    RevenuePeriod: Per-station, per-day revenue rollup
    DemandSnapshot: Pricing engine input
"""

from .reservation import Reservation, ReservationStatus, compute_total_price
from .revenue import HOURS_PER_DAY, DemandSnapshot, RevenuePeriod
from .session import Session, SessionStatus
from .station import Station

__all__ = [
    "HOURS_PER_DAY",
    "DemandSnapshot",
    "Reservation",
    "ReservationStatus",
    "RevenuePeriod",
    "Session",
    "SessionStatus",
    "Station",
    "compute_total_price",
]
