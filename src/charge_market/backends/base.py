# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Base Backend for the Charge Market

This module provides the BaseBackend abstract class that defines the storage
contract shared by every backend implementation.

Features:
- Session storage with an atomic compare-and-set transition primitive
- Station and reservation storage
- Accumulate-safe revenue rollups per (station, day)
- Health checks and statistics

"""

import abc
import logging
from dataclasses import dataclass, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any

from typing_extensions import Self

from ..types import Reservation, ReservationStatus, RevenuePeriod, Session, Station
from ..types.session import SessionStatus

logger = logging.getLogger(__name__)


@dataclass
class HealthCheckResult:
    """
    Structured health check result for backend monitoring.

    Attributes:
        healthy: Whether the backend is operational
        backend_type: Type of backend (e.g., 'redis', 'memory')
        namespace: Backend namespace
        error: Error message if unhealthy
        metadata: Additional backend-specific information
    """

    healthy: bool
    backend_type: str
    namespace: str
    error: str | None = None
    metadata: dict[str, Any] | None = None


@dataclass(frozen=True)
class SessionTransition:
    """
    A conditional write on a single session.

    The transition commits only if every precondition holds at the moment of
    the write; otherwise nothing is written. Preconditions left as None are
    not checked.

    Preconditions:
        expected_status: Current status must equal this
        expected_holder: Current reserved_by must equal this
        expected_reserved_until: Current reserved_until must equal this
        expired_at: Current reserved_until must be <= this
        valid_at: Current reserved_until must be > this

    Changes:
        new_status: Status after the write
        reserved_by, reserved_until: New soft-lock fields; required when
            new_status is RESERVED and cleared otherwise
        dynamic_price_per_kwh: New dynamic price, None keeps the current one
        clear_price: Drop any stamped dynamic price
        updated_at: Timestamp of the write
    """

    expected_status: SessionStatus
    new_status: SessionStatus
    updated_at: datetime
    expected_holder: str | None = None
    expected_reserved_until: datetime | None = None
    expired_at: datetime | None = None
    valid_at: datetime | None = None
    reserved_by: str | None = None
    reserved_until: datetime | None = None
    dynamic_price_per_kwh: Decimal | None = None
    clear_price: bool = False

    def __post_init__(self) -> None:
        if self.clear_price and self.dynamic_price_per_kwh is not None:
            raise ValueError("clear_price and dynamic_price_per_kwh are exclusive")
        holds = self.new_status == SessionStatus.RESERVED
        if holds and (self.reserved_by is None or self.reserved_until is None):
            raise ValueError("a RESERVED session needs reserved_by and reserved_until")
        if not holds and (
            self.reserved_by is not None or self.reserved_until is not None
        ):
            raise ValueError("reserved_by/reserved_until only apply to RESERVED")
        if self.new_status != self.expected_status and not (
            self.expected_status.can_transition_to(self.new_status)
        ):
            raise ValueError(
                f"invalid transition {self.expected_status.value} -> "
                f"{self.new_status.value}"
            )

    def matches(self, session: Session) -> bool:
        """Evaluate the preconditions against a session's current state."""
        if session.status != self.expected_status:
            return False
        if (
            self.expected_holder is not None
            and session.reserved_by != self.expected_holder
        ):
            return False
        if (
            self.expected_reserved_until is not None
            and session.reserved_until != self.expected_reserved_until
        ):
            return False
        if self.expired_at is not None and (
            session.reserved_until is None or session.reserved_until > self.expired_at
        ):
            return False
        if self.valid_at is not None and (
            session.reserved_until is None or session.reserved_until <= self.valid_at
        ):
            return False
        return True

    def apply(self, session: Session) -> Session:
        """Return the session as it looks after the write."""
        price = (
            self.dynamic_price_per_kwh
            if self.dynamic_price_per_kwh is not None or self.clear_price
            else session.dynamic_price_per_kwh
        )
        return replace(
            session,
            status=self.new_status,
            reserved_by=self.reserved_by,
            reserved_until=self.reserved_until,
            dynamic_price_per_kwh=price,
            updated_at=self.updated_at,
        )


@dataclass(frozen=True)
class RevenueDelta:
    """Increments applied to a RevenuePeriod; all fields accumulate."""

    sessions_count: int = 0
    total_kwh: Decimal = Decimal(0)
    total_revenue: Decimal = Decimal(0)
    auto_pricing_events: int = 0
    hour: int | None = None

    def __post_init__(self) -> None:
        if self.hour is not None and not (0 <= self.hour <= 23):
            raise ValueError(f"hour must be within 0..23, got {self.hour}")

    def apply(self, period: RevenuePeriod) -> RevenuePeriod:
        hourly = list(period.hourly_sessions)
        if self.hour is not None:
            hourly[self.hour] += self.sessions_count
        return replace(
            period,
            sessions_count=period.sessions_count + self.sessions_count,
            total_kwh=period.total_kwh + self.total_kwh,
            total_revenue=period.total_revenue + self.total_revenue,
            auto_pricing_events=period.auto_pricing_events + self.auto_pricing_events,
            hourly_sessions=tuple(hourly),
        )


class BaseBackend(abc.ABC):
    """
    An abstract base class that defines the storage contract of the charge
    market.

    Sessions are the only contended resource: every change to a session goes
    through transition_session(), a single atomic conditional write keyed on
    the session id and its expected state. Revenue rollups only need
    commutative increments. Everything else is plain keyed storage.

    Subclasses must implement all abstract methods to provide a concrete
    backend implementation.
    """

    def __init__(self, namespace: str = "charge_market"):
        """
        Initialize the backend with a namespace for isolation.

        Args:
            namespace: Namespace for isolating data across different instances
        """
        self.namespace = namespace

    # ==========================================================================
    # Sessions
    # ==========================================================================

    @abc.abstractmethod
    async def get_session(self, session_id: str) -> Session | None:
        """
        Get a session by id.

        Returns:
            The session if it exists, None otherwise
        """
        pass

    @abc.abstractmethod
    async def put_session(self, session: Session) -> None:
        """
        Create or overwrite a session unconditionally.

        Intended for station-management tooling creating supply; lifecycle
        changes must use transition_session().
        """
        pass

    @abc.abstractmethod
    async def transition_session(
        self, session_id: str, transition: SessionTransition
    ) -> Session | None:
        """
        Atomically apply a transition if its preconditions hold.

        Args:
            session_id: Session to update
            transition: Preconditions and changes

        Returns:
            The updated session, or None if the session does not exist or a
            precondition failed (nothing was written)
        """
        pass

    @abc.abstractmethod
    async def list_sessions_by_station(
        self,
        station_id: str,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
    ) -> list[Session]:
        """
        List a station's sessions, optionally bounded by created_at.

        Bounds are inclusive.
        """
        pass

    @abc.abstractmethod
    async def list_sessions_by_status(
        self,
        status: SessionStatus,
        station_id: str | None = None,
        limit: int | None = None,
    ) -> list[Session]:
        """List sessions currently in a status, optionally for one station."""
        pass

    @abc.abstractmethod
    async def list_expired_holds(
        self, now: datetime, limit: int | None = None
    ) -> list[Session]:
        """
        RESERVED sessions whose hold lapsed at or before now.

        Ordered by reserved_until, oldest first. At most limit sessions are
        read from storage.
        """
        pass

    # ==========================================================================
    # Stations
    # ==========================================================================

    @abc.abstractmethod
    async def get_station(self, station_id: str) -> Station | None:
        pass

    @abc.abstractmethod
    async def put_station(self, station: Station) -> None:
        pass

    # ==========================================================================
    # Reservations
    # ==========================================================================

    @abc.abstractmethod
    async def insert_reservation(self, reservation: Reservation) -> None:
        """
        Store a new reservation and link it to its session.

        The link is left alone while it points at another open reservation
        (PENDING, CONFIRMED or ACTIVE), so a losing concurrent confirm never
        hides the winning one.
        """
        pass

    @abc.abstractmethod
    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        pass

    @abc.abstractmethod
    async def get_reservation_for_session(
        self, session_id: str
    ) -> Reservation | None:
        """The reservation linked to the session, if any."""
        pass

    @abc.abstractmethod
    async def update_reservation_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        expected_status: ReservationStatus | None = None,
        completed_at: datetime | None = None,
        session_status: SessionStatus | None = None,
    ) -> Reservation | None:
        """
        Change a reservation's status, optionally conditioned on its current one.

        Moving to CONFIRMED links the reservation to its session.

        Args:
            reservation_id: Reservation to update
            status: New status
            expected_status: Current status must equal this
            completed_at: Completion timestamp to record
            session_status: The reservation's session must currently be in
                this status; checked atomically with the write

        Returns:
            The updated reservation, or None if it does not exist or a
            condition did not match
        """
        pass

    # ==========================================================================
    # Revenue
    # ==========================================================================

    @abc.abstractmethod
    async def accumulate_revenue(
        self, station_id: str, day: date, delta: RevenueDelta
    ) -> None:
        """
        Add delta to the (station_id, day) rollup, creating it if missing.

        Concurrent calls for the same key must all be reflected.
        """
        pass

    @abc.abstractmethod
    async def list_revenue_periods(
        self, station_id: str, limit: int = 30, until: date | None = None
    ) -> list[RevenuePeriod]:
        """
        Most recent rollups of a station, newest first.

        Args:
            station_id: Station to read
            limit: Maximum number of days returned
            until: Ignore days after this one
        """
        pass

    # ==========================================================================
    # Health and Maintenance
    # ==========================================================================

    @abc.abstractmethod
    async def health_check(self) -> HealthCheckResult:
        """Perform a health check on the backend."""
        pass

    @abc.abstractmethod
    async def get_all_stats(self) -> dict[str, Any]:
        """Get statistics about stored entities."""
        pass

    @abc.abstractmethod
    async def clear(self) -> None:
        """Delete everything stored under this backend's namespace."""
        pass

    @abc.abstractmethod
    async def cleanup(self) -> None:
        """Release backend resources (connections, tasks)."""
        pass

    async def __aenter__(self) -> Self:
        return self

    async def __aexit__(self, exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        await self.cleanup()


__all__ = [
    "BaseBackend",
    "HealthCheckResult",
    "RevenueDelta",
    "SessionTransition",
]
