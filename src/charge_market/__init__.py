# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Charge Market - Charging-session marketplace core.

This library implements the session lifecycle of a marketplace for EV
charging capacity: hosts publish time-boxed sessions, drivers soft-lock,
confirm and consume them, and prices follow station demand.

Key Features:
    - Soft-lock reservations arbitrated by atomic conditional writes
    - Background expiry reconciler returning lapsed holds to the market
    - Deterministic dynamic pricing from occupancy, hourly demand and time of day
    - Per-station, per-day revenue rollups
    - Multiple backend options (memory, Redis)
    - Prometheus metrics and pluggable lifecycle notifications

Quick Start:
    >>> from charge_market import ExpiryReconciler, MemoryBackend, ReservationManager
    >>>
    >>> backend = MemoryBackend()
    >>> manager = ReservationManager(backend)
    >>> async with ExpiryReconciler(backend):
    ...     held = await manager.reserve("session-1", "driver-a")
    ...     reservation = await manager.confirm("session-1", "driver-a")

Main Exports:
    - ReservationManager, ExpiryReconciler: Session lifecycle
    - compute_dynamic_price, DynamicPricer: Pricing
    - MemoryBackend, RedisBackend: Storage backends
    - MarketConfig, PricingConfig: Configuration options
    - SystemClock, ManualClock: Clocks

Note: RedisBackend requires the 'redis' extra. Install with:
    pip install charge-market[redis]

Version: 1.0.0
"""

__version__ = "1.0.0"

from typing import TYPE_CHECKING

from .backends import (
    BaseBackend,
    MemoryBackend,
    RevenueDelta,
    SessionTransition,
)
from .clock import ManualClock, SystemClock
from .config import MarketConfig, PricingConfig
from .exceptions import (
    BackendConnectionError,
    BackendOperationError,
    ConfigurationError,
    ConflictError,
    DataUnavailableError,
    ExpiredError,
    ForbiddenError,
    MarketError,
    NotFoundError,
)
from .notifications import (
    LoggingNotificationSink,
    MarketEvent,
    MarketEventType,
    RecordingNotificationSink,
)
from .pricing import (
    DemandSnapshotProvider,
    DynamicPricer,
    PricingResult,
    compute_dynamic_price,
)
from .protocols import ClockProtocol, NotificationSinkProtocol
from .reservation import ExpiryReconciler, ReservationManager, ReserveResult
from .types import (
    DemandSnapshot,
    Reservation,
    ReservationStatus,
    RevenuePeriod,
    Session,
    SessionStatus,
    Station,
)

# Lazy import for optional redis backend
if TYPE_CHECKING:
    from .backends import RedisBackend

__all__ = [
    "BackendConnectionError",
    "BackendOperationError",
    # Backends
    "BaseBackend",
    # Protocols
    "ClockProtocol",
    "ConfigurationError",
    "ConflictError",
    "DataUnavailableError",
    "DemandSnapshot",
    # Pricing
    "DemandSnapshotProvider",
    "DynamicPricer",
    "ExpiredError",
    "ExpiryReconciler",
    "ForbiddenError",
    # Notifications
    "LoggingNotificationSink",
    # Clocks
    "ManualClock",
    # Configuration
    "MarketConfig",
    # Exceptions
    "MarketError",
    "MarketEvent",
    "MarketEventType",
    "MemoryBackend",
    "NotFoundError",
    "NotificationSinkProtocol",
    "PricingConfig",
    "PricingResult",
    "RecordingNotificationSink",
    "RedisBackend",  # Lazy loaded - requires redis extra
    "Reservation",
    # Reservation
    "ReservationManager",
    "ReservationStatus",
    "ReserveResult",
    "RevenueDelta",
    "RevenuePeriod",
    # Types
    "Session",
    "SessionStatus",
    "SessionTransition",
    "Station",
    "SystemClock",
    "compute_dynamic_price",
]


def __getattr__(name: str) -> type:
    """Lazy import for optional redis backend."""
    if name == "RedisBackend":
        from .backends import RedisBackend

        return RedisBackend
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
