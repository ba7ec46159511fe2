# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation manager: the session lifecycle state machine.

Every state change is one conditional write through
BaseBackend.transition_session(), keyed on the session id and the state the
manager expects to find. When the write is rejected the manager re-reads the
session to report a precise error and never overwrites it. The one retry is
reserve on a hold that lapsed without being swept, which is released first
with the same conditional write the reconciler uses.

Lifecycle:
    available --reserve--> reserved --confirm--> active --complete--> completed
    reserved --expiry (reconciler)--> available
    available | reserved | active --cancel--> cancelled
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from ..backends.base import BaseBackend, RevenueDelta, SessionTransition
from ..clock import SystemClock
from ..config import MarketConfig
from ..exceptions import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    MarketError,
    NotFoundError,
)
from ..notifications import (
    LoggingNotificationSink,
    MarketEvent,
    MarketEventType,
    publish_safely,
)
from ..observability.collector import UnifiedMetricsCollector, get_metrics_collector
from ..observability.constants import (
    CONFIRMATIONS_REJECTED_TOTAL,
    NOTIFICATIONS_FAILED_TOTAL,
    RESERVATIONS_ATTEMPTED_TOTAL,
    RESERVATIONS_CANCELLED_TOTAL,
    RESERVATIONS_CONFIRMED_TOTAL,
    SESSIONS_COMPLETED_TOTAL,
)
from ..observability.protocols import MetricsCollectorProtocol
from ..pricing.engine import DynamicPricer
from ..protocols.clock import ClockProtocol
from ..protocols.notification import NotificationSinkProtocol
from ..types import (
    Reservation,
    ReservationStatus,
    Session,
    SessionStatus,
    compute_total_price,
)
from ..types.fields import MONEY_QUANTUM, to_decimal
from .reconciler import release_lapsed_hold

logger = logging.getLogger(__name__)

KWH_QUANTUM = Decimal("0.001")


@dataclass(frozen=True)
class ReserveResult:
    """
    Outcome of a successful reserve.

    Attributes:
        session: The held session (with its stamped dynamic price, if any)
        priced_at: Clock time the offered price was computed for
        price: Price per kWh offered for this hold
        pricing_outcome: "dynamic", "base" or "fallback"
    """

    session: Session
    priced_at: datetime
    price: Decimal
    pricing_outcome: str = "base"


class ReservationManager:
    """
    Owns the state transitions of sessions.

    The manager holds no locks of its own: arbitration between concurrent
    callers is entirely delegated to the backend's conditional write, so any
    number of manager instances (in one or many processes) can share a
    backend.

    Example:
        >>> manager = ReservationManager(MemoryBackend(), clock=ManualClock(t0))
        >>> held = await manager.reserve("s-1", "driver-a")
        >>> reservation = await manager.confirm("s-1", "driver-a")
    """

    def __init__(
        self,
        backend: BaseBackend,
        config: MarketConfig | None = None,
        clock: ClockProtocol | None = None,
        pricer: DynamicPricer | None = None,
        notifier: NotificationSinkProtocol | None = None,
        metrics: MetricsCollectorProtocol | None = None,
    ) -> None:
        """
        Initialize the reservation manager.

        Args:
            backend: Storage backend providing the conditional write
            config: Market configuration (soft-lock TTL, pricing tunables)
            clock: Source of "now"; defaults to the system clock
            pricer: Dynamic pricer; one is built from backend and config if omitted
            notifier: Receiver of lifecycle events; defaults to logging them
            metrics: Metrics collector; defaults to the global collector, or a
                dict-only collector when metrics are disabled in config
        """
        self.backend = backend
        self.config = config or MarketConfig()
        self.clock = clock or SystemClock()
        if metrics is None:
            metrics = (
                get_metrics_collector()
                if self.config.metrics_enabled
                else UnifiedMetricsCollector(enable_prometheus=False)
            )
        self.metrics = metrics
        self.pricer = pricer or DynamicPricer(
            backend, config=self.config.pricing, clock=self.clock, metrics=metrics
        )
        self.notifier = notifier or LoggingNotificationSink()

    # === Queries ===

    async def get_session(self, session_id: str) -> Session:
        """
        Get a session by id.

        Raises:
            NotFoundError: If the session does not exist
        """
        session = await self.backend.get_session(session_id)
        if session is None:
            raise NotFoundError("session", session_id)
        return session

    async def list_available_sessions(
        self, station_id: str | None = None, limit: int | None = None
    ) -> list[Session]:
        """Sessions open for reservation, ordered by start time."""
        return await self.backend.list_sessions_by_status(
            SessionStatus.AVAILABLE, station_id=station_id, limit=limit
        )

    async def list_live_sessions(self, station_id: str) -> list[Session]:
        """A station's held and in-progress sessions, ordered by start time."""
        reserved = await self.backend.list_sessions_by_status(
            SessionStatus.RESERVED, station_id=station_id
        )
        active = await self.backend.list_sessions_by_status(
            SessionStatus.ACTIVE, station_id=station_id
        )
        return sorted(reserved + active, key=lambda s: s.start_time)

    # === reserve ===

    async def reserve(self, session_id: str, user_id: str) -> ReserveResult:
        """
        Place a soft-lock on an available session and price it.

        The hold is granted only if the session is AVAILABLE at the moment of
        the write. It lasts soft_lock_ttl seconds from now and cannot be
        renewed by reserving again. A hold found past its expiry is released
        on the spot (as the reconciler would) and the reserve retried once.

        Raises:
            NotFoundError: If the session does not exist
            ConflictError: If the session is not available (already held,
                booked, completed or cancelled); re-fetch before retrying
        """
        now = self.clock.now()
        hold_until = now + self.config.soft_lock_duration

        held = await self._take_hold(session_id, user_id, now)
        if held is None:
            current = await self.backend.get_session(session_id)
            if current is not None and current.is_hold_expired(now):
                # Lapsed but not swept yet: release it here and retry once.
                await release_lapsed_hold(
                    self.backend, current, now, self.notifier, self.metrics
                )
                held = await self._take_hold(session_id, user_id, now)
                if held is None:
                    current = await self.backend.get_session(session_id)
            if held is None:
                if current is None:
                    self._count_attempt("not_found")
                    raise NotFoundError("session", session_id)
                self._count_attempt("conflict")
                raise ConflictError(
                    f"Session {session_id} is not available "
                    f"(status: {current.status.value})",
                    session_id=session_id,
                    current_status=current.status.value,
                )
        self._count_attempt("success")
        logger.debug(
            f"Session {session_id} reserved by {user_id} until "
            f"{hold_until.isoformat()}"
        )

        session, price, outcome, priced_at = await self._stamp_price(held, now)

        await self._publish(
            MarketEventType.SESSION_RESERVED,
            session,
            user_id,
            now,
            data={
                "price_per_kwh": str(price),
                "reserved_until": hold_until.isoformat(),
            },
        )
        return ReserveResult(
            session=session, priced_at=priced_at, price=price, pricing_outcome=outcome
        )

    async def _take_hold(
        self, session_id: str, user_id: str, now: datetime
    ) -> Session | None:
        # A new hold never inherits the price stamped for an earlier one.
        return await self.backend.transition_session(
            session_id,
            SessionTransition(
                expected_status=SessionStatus.AVAILABLE,
                new_status=SessionStatus.RESERVED,
                updated_at=now,
                reserved_by=user_id,
                reserved_until=now + self.config.soft_lock_duration,
                clear_price=True,
            ),
        )

    async def _stamp_price(
        self, held: Session, now: datetime
    ) -> tuple[Session, Decimal, str, datetime]:
        try:
            pricing = await self.pricer.price_session(held)
        except MarketError as e:
            # Pricing never blocks a reservation.
            logger.warning(
                f"Pricing failed for session {held.session_id}, "
                f"offering base price: {e}"
            )
            return held, held.base_price_per_kwh, "fallback", now

        if not pricing.is_dynamic:
            return held, pricing.price, pricing.outcome, pricing.priced_at

        # Conditioned on this exact hold so a late price never lands on a
        # newer one.
        stamped = await self.backend.transition_session(
            held.session_id,
            SessionTransition(
                expected_status=SessionStatus.RESERVED,
                new_status=SessionStatus.RESERVED,
                updated_at=now,
                expected_holder=held.reserved_by,
                expected_reserved_until=held.reserved_until,
                reserved_by=held.reserved_by,
                reserved_until=held.reserved_until,
                dynamic_price_per_kwh=pricing.price,
            ),
        )
        if stamped is None:
            logger.debug(
                f"Hold on session {held.session_id} changed before its price "
                f"was stamped"
            )
            return held, pricing.price, pricing.outcome, pricing.priced_at
        return stamped, pricing.price, pricing.outcome, pricing.priced_at

    # === confirm ===

    async def confirm(
        self,
        session_id: str,
        user_id: str,
        kwh_requested: Decimal | float | str | None = None,
        credits_used: Decimal | float | str = 0,
        is_priority: bool = False,
    ) -> Reservation:
        """
        Convert the caller's soft-lock into a reservation.

        The price per kWh is frozen from the session (the stamped dynamic
        price, or the base price). kwh_requested defaults to the full
        capacity of the window (available_kw x duration). Free kWh credits
        are deducted before pricing.

        Expiry is checked against the clock here, not only by the reconciler:
        a hold past reserved_until is rejected even if it was never swept.

        Raises:
            NotFoundError: If the session does not exist
            ForbiddenError: If the caller does not hold the session
            ExpiredError: If the hold has lapsed
            ConflictError: If the session is in any other state
            ValueError: If kwh_requested is not positive or credits_used is negative
        """
        now = self.clock.now()
        session = self._check_confirmable(
            session_id, await self.backend.get_session(session_id), user_id, now
        )

        kwh = (
            to_decimal(kwh_requested)
            if kwh_requested is not None
            else (session.available_kw * session.duration_hours).quantize(
                KWH_QUANTUM, rounding=ROUND_HALF_UP
            )
        )
        credits = to_decimal(credits_used)
        if kwh <= 0:
            raise ValueError("kwh_requested must be positive")
        if credits < 0:
            raise ValueError("credits_used must not be negative")

        price = session.effective_price_per_kwh
        reservation = Reservation(
            reservation_id=uuid.uuid4().hex,
            session_id=session_id,
            user_id=user_id,
            kwh_requested=kwh,
            price_per_kwh=price,
            total_price=compute_total_price(kwh, price, credits),
            credits_used=credits,
            is_priority=is_priority,
            status=ReservationStatus.PENDING,
            created_at=now,
        )
        await self.backend.insert_reservation(reservation)

        activated = await self.backend.transition_session(
            session_id,
            SessionTransition(
                expected_status=SessionStatus.RESERVED,
                new_status=SessionStatus.ACTIVE,
                updated_at=now,
                expected_holder=user_id,
                expected_reserved_until=session.reserved_until,
                valid_at=now,
            ),
        )
        if activated is None:
            settled = await self._abandon_pending(reservation)
            if settled is not None:
                return settled
            current = await self.backend.get_session(session_id)
            self._check_confirmable(session_id, current, user_id, now)
            # Still held by the caller and unexpired, but the hold changed
            # under us.
            self.metrics.inc_counter(
                CONFIRMATIONS_REJECTED_TOTAL, labels={"reason": "conflict"}
            )
            raise ConflictError(
                f"Session {session_id} changed during confirmation",
                session_id=session_id,
                current_status=current.status.value if current else None,
            )

        confirmed = await self.backend.update_reservation_status(
            reservation.reservation_id,
            ReservationStatus.CONFIRMED,
            expected_status=ReservationStatus.PENDING,
            session_status=SessionStatus.ACTIVE,
        )
        if confirmed is None:
            # Cancelled or completed between the session write and this one
            confirmed = await self._abandon_pending(reservation)
        if confirmed is None:
            current = await self.backend.get_session(session_id)
            self.metrics.inc_counter(
                CONFIRMATIONS_REJECTED_TOTAL, labels={"reason": "conflict"}
            )
            raise ConflictError(
                f"Session {session_id} changed during confirmation",
                session_id=session_id,
                current_status=current.status.value if current else None,
            )

        self.metrics.inc_counter(RESERVATIONS_CONFIRMED_TOTAL)
        logger.info(
            f"Reservation {confirmed.reservation_id} confirmed for session "
            f"{session_id} ({confirmed.kwh_requested} kWh at "
            f"{confirmed.price_per_kwh}/kWh)"
        )
        await self._publish(
            MarketEventType.RESERVATION_CONFIRMED,
            activated,
            user_id,
            now,
            reservation_id=confirmed.reservation_id,
            data={
                "price_per_kwh": str(confirmed.price_per_kwh),
                "total_price": str(confirmed.total_price),
            },
        )
        return confirmed

    def _check_confirmable(
        self,
        session_id: str,
        session: Session | None,
        user_id: str,
        now: datetime,
    ) -> Session:
        """Raise the error a confirm by user_id at now would fail with, if any."""
        if session is None:
            raise NotFoundError("session", session_id)

        reason: str | None = None
        error: MarketError | None = None
        if session.status == SessionStatus.AVAILABLE:
            # The hold lapsed and was already swept.
            reason = "expired"
            error = ExpiredError(
                f"Hold on session {session_id} has expired",
                session_id=session_id,
            )
        elif session.status != SessionStatus.RESERVED:
            reason = "conflict"
            error = ConflictError(
                f"Session {session_id} is not reserved "
                f"(status: {session.status.value})",
                session_id=session_id,
                current_status=session.status.value,
            )
        elif session.reserved_by != user_id:
            reason = "forbidden"
            error = ForbiddenError(
                f"Session {session_id} is held by another user",
                session_id=session_id,
                user_id=user_id,
            )
        elif session.is_hold_expired(now):
            reason = "expired"
            error = ExpiredError(
                f"Hold on session {session_id} expired at "
                f"{session.reserved_until.isoformat() if session.reserved_until else '?'}",
                session_id=session_id,
                reserved_until=session.reserved_until,
            )

        if error is not None:
            self.metrics.inc_counter(
                CONFIRMATIONS_REJECTED_TOTAL, labels={"reason": reason or "conflict"}
            )
            raise error
        return session

    async def _abandon_pending(self, reservation: Reservation) -> Reservation | None:
        """
        Cancel the PENDING reservation of a confirm that did not go through.

        Returns the stored reservation instead when a concurrent complete has
        already booked it; None otherwise.
        """
        cancelled = await self.backend.update_reservation_status(
            reservation.reservation_id,
            ReservationStatus.CANCELLED,
            expected_status=ReservationStatus.PENDING,
        )
        if cancelled is not None:
            return None
        current = await self.backend.get_reservation(reservation.reservation_id)
        if current is not None and current.status == ReservationStatus.COMPLETED:
            return current
        return None

    # === cancel ===

    async def cancel(
        self, session_id: str, user_id: str, *, operator: bool = False
    ) -> Session:
        """
        Cancel a session.

        Allowed:
            * RESERVED: by the holder, while the hold is still valid
            * ACTIVE: by the reservation holder, or by an operator
            * AVAILABLE: by an operator (withdrawal of supply)

        The station owner always counts as an operator; operator=True grants
        the same rights to other staff. Any open reservation of the session
        is cancelled with it.

        Raises:
            NotFoundError: If the session does not exist
            ForbiddenError: If the caller may not cancel in the current state
            ExpiredError: If the caller's hold has already lapsed
            ConflictError: If the session is terminal or changed concurrently
        """
        now = self.clock.now()
        session = await self.get_session(session_id)
        from_status = session.status

        station = await self.backend.get_station(session.station_id)
        is_operator = operator or (station is not None and station.owner_id == user_id)
        reservation = None
        transition: SessionTransition

        if from_status == SessionStatus.RESERVED:
            if session.reserved_by != user_id:
                raise ForbiddenError(
                    f"Only the holder can cancel the hold on session {session_id}",
                    session_id=session_id,
                    user_id=user_id,
                )
            if session.is_hold_expired(now):
                raise ExpiredError(
                    f"Hold on session {session_id} has already expired",
                    session_id=session_id,
                    reserved_until=session.reserved_until,
                )
            transition = SessionTransition(
                expected_status=SessionStatus.RESERVED,
                new_status=SessionStatus.CANCELLED,
                updated_at=now,
                expected_holder=user_id,
                expected_reserved_until=session.reserved_until,
                valid_at=now,
            )
        elif from_status == SessionStatus.ACTIVE:
            reservation = await self._open_reservation(session_id)
            holder = reservation.user_id if reservation else None
            if holder != user_id and not is_operator:
                raise ForbiddenError(
                    f"Only the reservation holder or an operator can cancel "
                    f"session {session_id}",
                    session_id=session_id,
                    user_id=user_id,
                )
            transition = SessionTransition(
                expected_status=SessionStatus.ACTIVE,
                new_status=SessionStatus.CANCELLED,
                updated_at=now,
            )
        elif from_status == SessionStatus.AVAILABLE:
            if not is_operator:
                raise ForbiddenError(
                    f"Only an operator can withdraw session {session_id}",
                    session_id=session_id,
                    user_id=user_id,
                )
            transition = SessionTransition(
                expected_status=SessionStatus.AVAILABLE,
                new_status=SessionStatus.CANCELLED,
                updated_at=now,
            )
        else:
            raise ConflictError(
                f"Session {session_id} is already {from_status.value}",
                session_id=session_id,
                current_status=from_status.value,
            )

        cancelled = await self.backend.transition_session(session_id, transition)
        if cancelled is None:
            current = await self.get_session(session_id)
            raise ConflictError(
                f"Session {session_id} changed during cancellation "
                f"(status: {current.status.value})",
                session_id=session_id,
                current_status=current.status.value,
            )

        if reservation is not None and reservation.status.is_open:
            await self.backend.update_reservation_status(
                reservation.reservation_id, ReservationStatus.CANCELLED
            )

        self.metrics.inc_counter(
            RESERVATIONS_CANCELLED_TOTAL, labels={"from_status": from_status.value}
        )
        logger.info(
            f"Session {session_id} cancelled from {from_status.value} by {user_id}"
        )
        await self._publish(
            MarketEventType.SESSION_CANCELLED,
            cancelled,
            reservation.user_id if reservation else user_id,
            now,
            reservation_id=reservation.reservation_id if reservation else None,
            data={
                "from_status": from_status.value,
                "cancelled_by": user_id,
                "by_operator": is_operator,
            },
        )
        return cancelled

    # === complete ===

    async def complete(
        self,
        session_id: str,
        *,
        kwh_delivered: Decimal | float | str | None = None,
    ) -> Session:
        """
        Mark an active session as completed and roll up its revenue.

        The station's revenue period for the session's start day receives one
        session, the delivered energy and the revenue, and the start hour's
        hourly counter is incremented. Without kwh_delivered the booked
        quantity and total price of the reservation are used.

        Raises:
            NotFoundError: If the session does not exist
            ConflictError: If the session is not active
        """
        now = self.clock.now()
        session = await self.get_session(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise ConflictError(
                f"Session {session_id} is not active (status: {session.status.value})",
                session_id=session_id,
                current_status=session.status.value,
            )

        reservation = await self._open_reservation(session_id)

        completed = await self.backend.transition_session(
            session_id,
            SessionTransition(
                expected_status=SessionStatus.ACTIVE,
                new_status=SessionStatus.COMPLETED,
                updated_at=now,
            ),
        )
        if completed is None:
            current = await self.get_session(session_id)
            raise ConflictError(
                f"Session {session_id} changed during completion "
                f"(status: {current.status.value})",
                session_id=session_id,
                current_status=current.status.value,
            )

        kwh, revenue = self._delivered_and_revenue(completed, reservation, kwh_delivered)

        if reservation is not None:
            await self.backend.update_reservation_status(
                reservation.reservation_id,
                ReservationStatus.COMPLETED,
                completed_at=now,
            )

        await self.backend.accumulate_revenue(
            completed.station_id,
            completed.start_time.date(),
            RevenueDelta(
                sessions_count=1,
                total_kwh=kwh,
                total_revenue=revenue,
                hour=completed.start_time.hour,
            ),
        )

        self.metrics.inc_counter(SESSIONS_COMPLETED_TOTAL)
        logger.info(
            f"Session {session_id} completed: {kwh} kWh, revenue {revenue}"
        )
        await self._publish(
            MarketEventType.SESSION_COMPLETED,
            completed,
            reservation.user_id if reservation else None,
            now,
            reservation_id=reservation.reservation_id if reservation else None,
            data={"kwh_delivered": str(kwh), "revenue": str(revenue)},
        )
        return completed

    @staticmethod
    def _delivered_and_revenue(
        session: Session,
        reservation: Reservation | None,
        kwh_delivered: Decimal | float | str | None,
    ) -> tuple[Decimal, Decimal]:
        if reservation is None:
            kwh = to_decimal(kwh_delivered) if kwh_delivered is not None else Decimal(0)
            revenue = (kwh * session.effective_price_per_kwh).quantize(
                MONEY_QUANTUM, rounding=ROUND_HALF_UP
            )
            return kwh, revenue

        if kwh_delivered is None:
            return reservation.kwh_requested, reservation.total_price

        kwh = to_decimal(kwh_delivered)
        return kwh, compute_total_price(
            kwh, reservation.price_per_kwh, reservation.credits_used
        )

    # === helpers ===

    async def _open_reservation(self, session_id: str) -> Reservation | None:
        """The session's linked reservation, unless it was already closed."""
        reservation = await self.backend.get_reservation_for_session(session_id)
        if reservation is None or not reservation.status.is_open:
            return None
        return reservation

    def _count_attempt(self, outcome: str) -> None:
        self.metrics.inc_counter(
            RESERVATIONS_ATTEMPTED_TOTAL, labels={"outcome": outcome}
        )

    async def _publish(
        self,
        event_type: MarketEventType,
        session: Session,
        user_id: str | None,
        now: datetime,
        reservation_id: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        event = MarketEvent(
            event_type=event_type,
            session_id=session.session_id,
            station_id=session.station_id,
            user_id=user_id,
            occurred_at=now,
            reservation_id=reservation_id,
            data=data or {},
        )
        await publish_safely(
            self.notifier,
            event,
            on_failure=lambda: self.metrics.inc_counter(
                NOTIFICATIONS_FAILED_TOTAL, labels={"event_type": event_type.value}
            ),
        )


__all__ = ["KWH_QUANTUM", "ReservationManager", "ReserveResult"]
