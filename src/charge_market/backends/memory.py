# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
MemoryBackend for the Charge Market

This module provides an in-memory backend implementation that doesn't require Redis.
Perfect for testing, development, and single-process deployments.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import date, datetime
from typing import Any

from ..types import Reservation, ReservationStatus, RevenuePeriod, Session, Station
from ..types.fields import load_datetime
from ..types.session import SessionStatus
from .base import BaseBackend, HealthCheckResult, RevenueDelta, SessionTransition

logger = logging.getLogger(__name__)


class MemoryBackend(BaseBackend):
    """
    An in-memory backend implementation for the charge market.

    This backend provides a simple, Redis-free implementation suitable for:
    - Testing and development
    - Single-process applications

    Key Features:
    - Entities stored as the same flat string mappings the Redis backend uses,
      so callers never share mutable objects with the store
    - Conditional writes serialised by one asyncio.Lock; the lock is held only
      for the in-memory read-modify-write and never across other awaits
    - No external dependencies beyond Python stdlib

    Note:
        This backend is NOT suitable for:
        - Multi-process applications
        - Distributed systems
    """

    def __init__(self, namespace: str = "charge_market_memory") -> None:
        """
        Initialize the in-memory backend.

        Args:
            namespace: Namespace for key isolation (for compatibility)
        """
        super().__init__(namespace)

        self._sessions: dict[str, dict[str, str]] = {}
        self._stations: dict[str, dict[str, str]] = {}
        self._reservations: dict[str, dict[str, str]] = {}
        self._session_reservation: dict[str, str] = {}
        # station_id -> day -> rollup
        self._revenue: dict[str, dict[date, dict[str, str]]] = defaultdict(dict)

        # Number of committed and rejected conditional writes
        self._transitions_applied = 0
        self._transitions_rejected = 0

        self._lock = asyncio.Lock()

        logger.debug(f"Initialized MemoryBackend with namespace '{namespace}'")

    # Sessions

    async def get_session(self, session_id: str) -> Session | None:
        async with self._lock:
            data = self._sessions.get(session_id)
            return Session.from_dict(data) if data else None

    async def put_session(self, session: Session) -> None:
        async with self._lock:
            self._sessions[session.session_id] = session.to_dict()

    async def transition_session(
        self, session_id: str, transition: SessionTransition
    ) -> Session | None:
        async with self._lock:
            data = self._sessions.get(session_id)
            if data is None:
                self._transitions_rejected += 1
                return None

            current = Session.from_dict(data)
            if not transition.matches(current):
                self._transitions_rejected += 1
                logger.debug(
                    f"Transition rejected for session {session_id}: "
                    f"status={current.status.value}, "
                    f"expected={transition.expected_status.value}"
                )
                return None

            updated = transition.apply(current)
            self._sessions[session_id] = updated.to_dict()
            self._transitions_applied += 1
            return updated

    async def list_sessions_by_station(
        self,
        station_id: str,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
    ) -> list[Session]:
        async with self._lock:
            sessions = [
                Session.from_dict(data)
                for data in self._sessions.values()
                if data["station_id"] == station_id
            ]
        return [
            s
            for s in sessions
            if (created_after is None or s.created_at >= created_after)
            and (created_before is None or s.created_at <= created_before)
        ]

    async def list_sessions_by_status(
        self,
        status: SessionStatus,
        station_id: str | None = None,
        limit: int | None = None,
    ) -> list[Session]:
        async with self._lock:
            matching = [
                Session.from_dict(data)
                for data in self._sessions.values()
                if data["status"] == status.value
                and (station_id is None or data["station_id"] == station_id)
            ]
        matching.sort(key=lambda s: s.start_time)
        return matching if limit is None else matching[:limit]

    async def list_expired_holds(
        self, now: datetime, limit: int | None = None
    ) -> list[Session]:
        async with self._lock:
            lapsed = []
            for data in self._sessions.values():
                if data["status"] != SessionStatus.RESERVED.value:
                    continue
                until = load_datetime(data.get("reserved_until"))
                if until is not None and until <= now:
                    lapsed.append((until, data))
            lapsed.sort(key=lambda pair: pair[0])
            if limit is not None:
                lapsed = lapsed[:limit]
            return [Session.from_dict(data) for _, data in lapsed]

    # Stations

    async def get_station(self, station_id: str) -> Station | None:
        async with self._lock:
            data = self._stations.get(station_id)
            return Station.from_dict(data) if data else None

    async def put_station(self, station: Station) -> None:
        async with self._lock:
            self._stations[station.station_id] = station.to_dict()

    # Reservations

    async def insert_reservation(self, reservation: Reservation) -> None:
        async with self._lock:
            self._reservations[reservation.reservation_id] = reservation.to_dict()
            linked_id = self._session_reservation.get(reservation.session_id)
            linked = self._reservations.get(linked_id) if linked_id else None
            if linked is None or not ReservationStatus(linked["status"]).is_open:
                self._session_reservation[reservation.session_id] = (
                    reservation.reservation_id
                )

    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        async with self._lock:
            data = self._reservations.get(reservation_id)
            return Reservation.from_dict(data) if data else None

    async def get_reservation_for_session(
        self, session_id: str
    ) -> Reservation | None:
        async with self._lock:
            reservation_id = self._session_reservation.get(session_id)
            if reservation_id is None:
                return None
            data = self._reservations.get(reservation_id)
            return Reservation.from_dict(data) if data else None

    async def update_reservation_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        expected_status: ReservationStatus | None = None,
        completed_at: datetime | None = None,
        session_status: SessionStatus | None = None,
    ) -> Reservation | None:
        async with self._lock:
            data = self._reservations.get(reservation_id)
            if data is None:
                return None
            if expected_status is not None and data["status"] != expected_status.value:
                return None
            if session_status is not None:
                session = self._sessions.get(data["session_id"])
                if session is None or session["status"] != session_status.value:
                    return None

            reservation = Reservation.from_dict(data)
            reservation.status = status
            if completed_at is not None:
                reservation.completed_at = completed_at
            self._reservations[reservation_id] = reservation.to_dict()
            if status == ReservationStatus.CONFIRMED:
                self._session_reservation[reservation.session_id] = reservation_id
            return reservation

    # Revenue

    async def accumulate_revenue(
        self, station_id: str, day: date, delta: RevenueDelta
    ) -> None:
        async with self._lock:
            existing = self._revenue[station_id].get(day)
            period = (
                RevenuePeriod.from_dict(existing)
                if existing
                else RevenuePeriod(station_id=station_id, day=day)
            )
            self._revenue[station_id][day] = delta.apply(period).to_dict()

    async def list_revenue_periods(
        self, station_id: str, limit: int = 30, until: date | None = None
    ) -> list[RevenuePeriod]:
        async with self._lock:
            stored = self._revenue.get(station_id, {})
            days = sorted(
                (d for d in stored if until is None or d <= until), reverse=True
            )[:limit]
            return [RevenuePeriod.from_dict(stored[d]) for d in days]

    # Health and Monitoring

    async def health_check(self) -> HealthCheckResult:
        """Perform a health check on the backend."""
        async with self._lock:
            return HealthCheckResult(
                healthy=True,
                backend_type="memory",
                namespace=self.namespace,
                metadata={
                    "sessions_count": len(self._sessions),
                    "stations_count": len(self._stations),
                    "reservations_count": len(self._reservations),
                },
            )

    async def get_all_stats(self) -> dict[str, Any]:
        """Get all statistics from the backend."""
        async with self._lock:
            by_status: dict[str, int] = defaultdict(int)
            for data in self._sessions.values():
                by_status[data["status"]] += 1

            return {
                "backend_type": "memory",
                "sessions_count": len(self._sessions),
                "sessions_by_status": dict(by_status),
                "stations_count": len(self._stations),
                "reservations_count": len(self._reservations),
                "revenue_periods_count": sum(
                    len(days) for days in self._revenue.values()
                ),
                "transitions_applied": self._transitions_applied,
                "transitions_rejected": self._transitions_rejected,
            }

    # Cleanup and Maintenance

    async def clear(self) -> None:
        """Clear all stored entities."""
        async with self._lock:
            self._sessions.clear()
            self._stations.clear()
            self._reservations.clear()
            self._session_reservation.clear()
            self._revenue.clear()
            self._transitions_applied = 0
            self._transitions_rejected = 0

    async def cleanup(self) -> None:
        """Clean up backend resources."""
        await self.clear()
        logger.debug("MemoryBackend cleanup completed")


__all__ = ["MemoryBackend"]
