import asyncio
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from charge_market.config import MarketConfig
from charge_market.exceptions import (
    ConflictError,
    DataUnavailableError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
)
from charge_market.notifications import MarketEventType
from charge_market.observability.constants import (
    CONFIRMATIONS_REJECTED_TOTAL,
    HOLDS_EXPIRED_TOTAL,
    NOTIFICATIONS_FAILED_TOTAL,
    RESERVATIONS_ATTEMPTED_TOTAL,
    RESERVATIONS_CANCELLED_TOTAL,
    RESERVATIONS_CONFIRMED_TOTAL,
    SESSIONS_COMPLETED_TOTAL,
)
from charge_market.reservation import ExpiryReconciler, ReservationManager
from charge_market.types import ReservationStatus, SessionStatus


class FailingSink:
    async def publish(self, event):
        raise RuntimeError("broker down")


@pytest.fixture
def manager(backend, config, clock, sink, metrics):
    return ReservationManager(
        backend, config=config, clock=clock, notifier=sink, metrics=metrics
    )


@pytest.fixture
async def seeded(backend, session_factory, station_factory):
    await backend.put_station(station_factory())
    session = session_factory()
    await backend.put_session(session)
    return session


async def _seed_busy_history(backend, session_factory, t0):
    for i in range(10):
        status = SessionStatus.COMPLETED if i < 9 else SessionStatus.AVAILABLE
        await backend.put_session(
            session_factory(
                f"hist-{i}", status=status, created_at=t0 - timedelta(hours=3)
            )
        )


class TestReserve:
    @pytest.mark.asyncio
    async def test_reserve_places_hold(self, manager, seeded, sink, metrics, t0):
        result = await manager.reserve("s-1", "driver-a")

        assert result.session.status is SessionStatus.RESERVED
        assert result.session.reserved_by == "driver-a"
        assert result.session.reserved_until == t0 + timedelta(seconds=300)
        assert result.price == Decimal("0.35")
        assert result.pricing_outcome == "base"
        assert result.priced_at == t0
        assert metrics.get_counter(
            RESERVATIONS_ATTEMPTED_TOTAL, {"outcome": "success"}
        ) == 1

        [event] = sink.of_type(MarketEventType.SESSION_RESERVED)
        assert event.user_id == "driver-a"
        assert event.data == {
            "price_per_kwh": "0.35",
            "reserved_until": (t0 + timedelta(seconds=300)).isoformat(),
        }

    @pytest.mark.asyncio
    async def test_reserve_unknown_session(self, manager, metrics):
        with pytest.raises(NotFoundError):
            await manager.reserve("missing", "driver-a")
        assert metrics.get_counter(
            RESERVATIONS_ATTEMPTED_TOTAL, {"outcome": "not_found"}
        ) == 1

    @pytest.mark.asyncio
    async def test_reserve_held_session_conflicts(self, manager, seeded, backend):
        await manager.reserve("s-1", "driver-a")

        with pytest.raises(ConflictError) as exc_info:
            await manager.reserve("s-1", "driver-b")

        assert exc_info.value.current_status == "reserved"
        assert (await backend.get_session("s-1")).reserved_by == "driver-a"

    @pytest.mark.asyncio
    async def test_holder_cannot_renew_hold(self, manager, seeded, backend, clock, t0):
        await manager.reserve("s-1", "driver-a")
        clock.advance(seconds=200)

        with pytest.raises(ConflictError):
            await manager.reserve("s-1", "driver-a")

        held = await backend.get_session("s-1")
        assert held.reserved_until == t0 + timedelta(seconds=300)

    @pytest.mark.asyncio
    async def test_concurrent_reserves_single_winner(self, manager, seeded, backend):
        results = await asyncio.gather(
            *(manager.reserve("s-1", f"driver-{i}") for i in range(10)),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 9
        assert all(isinstance(e, ConflictError) for e in losers)
        stored = await backend.get_session("s-1")
        assert stored.reserved_by == winners[0].session.reserved_by

    @pytest.mark.asyncio
    async def test_dynamic_price_stamped_on_hold(
        self, manager, backend, session_factory, station_factory, t0
    ):
        await backend.put_station(station_factory(auto_pricing_on=True))
        await backend.put_session(session_factory())
        await _seed_busy_history(backend, session_factory, t0)

        result = await manager.reserve("s-1", "driver-a")
        await manager.pricer.drain()

        assert result.pricing_outcome == "dynamic"
        assert result.price == Decimal("0.46")
        stored = await backend.get_session("s-1")
        assert stored.dynamic_price_per_kwh == Decimal("0.46")
        assert stored.reserved_by == "driver-a"

        reservation = await manager.confirm("s-1", "driver-a")
        assert reservation.price_per_kwh == Decimal("0.46")
        assert reservation.total_price == Decimal("10.12")

    @pytest.mark.asyncio
    async def test_pricing_failure_falls_back_to_base(
        self, backend, config, clock, sink, metrics, seeded
    ):
        pricer = AsyncMock()
        pricer.price_session.side_effect = DataUnavailableError("offline")
        manager = ReservationManager(
            backend, config=config, clock=clock, pricer=pricer, notifier=sink,
            metrics=metrics,
        )

        result = await manager.reserve("s-1", "driver-a")

        assert result.pricing_outcome == "fallback"
        assert result.price == Decimal("0.35")
        assert result.session.status is SessionStatus.RESERVED

    @pytest.mark.asyncio
    @pytest.mark.parametrize("swept", [True, False])
    async def test_new_hold_does_not_inherit_lapsed_price(
        self, manager, backend, config, clock, sink, metrics, session_factory,
        station_factory, t0, swept,
    ):
        await backend.put_station(station_factory(auto_pricing_on=True))
        await backend.put_session(session_factory())
        await _seed_busy_history(backend, session_factory, t0)

        offered = await manager.reserve("s-1", "driver-a")
        await manager.pricer.drain()
        assert offered.price == Decimal("0.46")

        clock.advance(seconds=301)
        if swept:
            reconciler = ExpiryReconciler(
                backend, config=config, clock=clock, notifier=sink, metrics=metrics
            )
            assert await reconciler.sweep_once() == 1
        await backend.put_station(station_factory(auto_pricing_on=False))

        result = await manager.reserve("s-1", "driver-b")
        assert result.pricing_outcome == "base"
        assert result.price == Decimal("0.35")
        assert result.session.dynamic_price_per_kwh is None

        reservation = await manager.confirm("s-1", "driver-b")
        assert reservation.price_per_kwh == Decimal("0.35")
        assert reservation.total_price == Decimal("7.70")

    @pytest.mark.asyncio
    async def test_reserve_releases_unswept_lapsed_hold(
        self, manager, seeded, backend, clock, sink, metrics, t0
    ):
        await manager.reserve("s-1", "driver-a")

        clock.advance(seconds=301)
        with pytest.raises(ExpiredError):
            await manager.confirm("s-1", "driver-a")

        clock.advance(seconds=1)
        result = await manager.reserve("s-1", "driver-b")

        assert result.session.reserved_by == "driver-b"
        assert result.session.reserved_until == t0 + timedelta(seconds=602)
        [expired] = sink.of_type(MarketEventType.RESERVATION_EXPIRED)
        assert expired.user_id == "driver-a"
        assert metrics.get_counter(HOLDS_EXPIRED_TOTAL) == 1
        assert metrics.get_counter(
            RESERVATIONS_ATTEMPTED_TOTAL, {"outcome": "success"}
        ) == 2

    @pytest.mark.asyncio
    async def test_reserve_retry_still_conflicts_when_rebooked(
        self, manager, seeded, backend, clock, t0
    ):
        await manager.reserve("s-1", "driver-a")
        clock.advance(seconds=301)

        real_transition = backend.transition_session

        async def rebooked_first(session_id, transition):
            # Another driver takes the hold right after it is released
            result = await real_transition(session_id, transition)
            if result is not None and result.status is SessionStatus.AVAILABLE:
                backend.transition_session = real_transition
                await manager.reserve("s-1", "driver-c")
            return result

        backend.transition_session = rebooked_first

        with pytest.raises(ConflictError):
            await manager.reserve("s-1", "driver-b")

        assert (await backend.get_session("s-1")).reserved_by == "driver-c"


class TestConfirm:
    @pytest.mark.asyncio
    async def test_confirm_creates_reservation(
        self, manager, seeded, backend, sink, metrics, t0
    ):
        await manager.reserve("s-1", "driver-a")

        reservation = await manager.confirm("s-1", "driver-a")

        assert reservation.status is ReservationStatus.CONFIRMED
        # 11 kW over a 2 hour window
        assert reservation.kwh_requested == Decimal("22.000")
        assert reservation.price_per_kwh == Decimal("0.35")
        assert reservation.total_price == Decimal("7.70")
        assert reservation.created_at == t0

        session = await backend.get_session("s-1")
        assert session.status is SessionStatus.ACTIVE
        assert session.reserved_by is None
        assert session.reserved_until is None

        linked = await backend.get_reservation_for_session("s-1")
        assert linked.reservation_id == reservation.reservation_id
        assert linked.status is ReservationStatus.CONFIRMED
        assert metrics.get_counter(RESERVATIONS_CONFIRMED_TOTAL) == 1

        [event] = sink.of_type(MarketEventType.RESERVATION_CONFIRMED)
        assert event.reservation_id == reservation.reservation_id
        assert event.data["total_price"] == "7.70"

    @pytest.mark.asyncio
    async def test_confirm_with_quantity_and_credits(self, manager, seeded):
        await manager.reserve("s-1", "driver-a")

        reservation = await manager.confirm(
            "s-1", "driver-a", kwh_requested="10", credits_used=2, is_priority=True
        )

        assert reservation.kwh_requested == Decimal("10")
        assert reservation.credits_used == Decimal("2")
        assert reservation.total_price == Decimal("2.80")
        assert reservation.is_priority is True

    @pytest.mark.asyncio
    async def test_confirm_by_other_user_forbidden(
        self, manager, seeded, backend, metrics
    ):
        await manager.reserve("s-1", "driver-a")

        with pytest.raises(ForbiddenError):
            await manager.confirm("s-1", "driver-b")

        assert (await backend.get_session("s-1")).status is SessionStatus.RESERVED
        assert metrics.get_counter(
            CONFIRMATIONS_REJECTED_TOTAL, {"reason": "forbidden"}
        ) == 1

    @pytest.mark.asyncio
    async def test_confirm_unswept_expired_hold(
        self, manager, seeded, backend, clock, t0
    ):
        await manager.reserve("s-1", "driver-a")
        clock.advance(seconds=301)

        with pytest.raises(ExpiredError) as exc_info:
            await manager.confirm("s-1", "driver-a")

        assert exc_info.value.reserved_until == t0 + timedelta(seconds=300)
        assert (await backend.get_session("s-1")).status is SessionStatus.RESERVED
        assert await backend.get_reservation_for_session("s-1") is None

    @pytest.mark.asyncio
    async def test_hold_expires_at_exact_deadline(self, manager, seeded, clock):
        await manager.reserve("s-1", "driver-a")
        clock.advance(seconds=300)

        with pytest.raises(ExpiredError):
            await manager.confirm("s-1", "driver-a")

    @pytest.mark.asyncio
    async def test_confirm_just_before_deadline(self, manager, seeded, clock):
        await manager.reserve("s-1", "driver-a")
        clock.advance(seconds=299)

        reservation = await manager.confirm("s-1", "driver-a")
        assert reservation.status is ReservationStatus.CONFIRMED

    @pytest.mark.asyncio
    async def test_confirm_after_sweep_then_rebook(
        self, manager, seeded, backend, config, clock, sink, metrics
    ):
        reconciler = ExpiryReconciler(
            backend, config=config, clock=clock, notifier=sink, metrics=metrics
        )
        await manager.reserve("s-1", "driver-a")

        clock.advance(seconds=301)
        assert await reconciler.sweep_once() == 1

        clock.advance(seconds=1)
        with pytest.raises(ExpiredError):
            await manager.confirm("s-1", "driver-a")

        result = await manager.reserve("s-1", "driver-b")
        assert result.session.reserved_by == "driver-b"

    @pytest.mark.asyncio
    async def test_confirm_active_session_conflicts(self, manager, seeded, metrics):
        await manager.reserve("s-1", "driver-a")
        await manager.confirm("s-1", "driver-a")

        with pytest.raises(ConflictError) as exc_info:
            await manager.confirm("s-1", "driver-a")

        assert exc_info.value.current_status == "active"
        assert metrics.get_counter(
            CONFIRMATIONS_REJECTED_TOTAL, {"reason": "conflict"}
        ) == 1

    @pytest.mark.asyncio
    async def test_confirm_unknown_session(self, manager):
        with pytest.raises(NotFoundError):
            await manager.confirm("missing", "driver-a")

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs", [{"kwh_requested": 0}, {"kwh_requested": "-1"}, {"credits_used": -1}]
    )
    async def test_invalid_quantities(self, manager, seeded, backend, kwargs):
        await manager.reserve("s-1", "driver-a")

        with pytest.raises(ValueError):
            await manager.confirm("s-1", "driver-a", **kwargs)

        assert (await backend.get_session("s-1")).status is SessionStatus.RESERVED
        assert backend._reservations == {}

    @pytest.mark.asyncio
    async def test_concurrent_confirms_single_reservation(
        self, manager, seeded, backend
    ):
        await manager.reserve("s-1", "driver-a")

        results = await asyncio.gather(
            manager.confirm("s-1", "driver-a"),
            manager.confirm("s-1", "driver-a"),
            return_exceptions=True,
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        errors = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(errors) == 1
        assert isinstance(errors[0], ConflictError)
        linked = await backend.get_reservation_for_session("s-1")
        assert linked.reservation_id == winners[0].reservation_id

    @pytest.mark.asyncio
    async def test_lost_write_cancels_pending_reservation(
        self, manager, seeded, backend
    ):
        await manager.reserve("s-1", "driver-a")
        real_transition = backend.transition_session
        backend.transition_session = AsyncMock(return_value=None)

        with pytest.raises(ConflictError, match="changed during confirmation"):
            await manager.confirm("s-1", "driver-a")

        backend.transition_session = real_transition
        [pending] = [
            await backend.get_reservation(rid) for rid in list(backend._reservations)
        ]
        assert pending.status is ReservationStatus.CANCELLED
        linked = await backend.get_reservation_for_session("s-1")
        assert linked.status is ReservationStatus.CANCELLED
        assert (await backend.get_session("s-1")).status is SessionStatus.RESERVED


def _before_confirmed_write(backend, action):
    """Run action once, just before the reservation is marked CONFIRMED."""
    real_update = backend.update_reservation_status

    async def update(reservation_id, status, **kwargs):
        if status is ReservationStatus.CONFIRMED:
            backend.update_reservation_status = real_update
            await action()
        return await real_update(reservation_id, status, **kwargs)

    backend.update_reservation_status = update


class TestConfirmInterleaving:
    @pytest.mark.asyncio
    async def test_cancel_before_reservation_confirmed(
        self, manager, seeded, backend, metrics
    ):
        await manager.reserve("s-1", "driver-a")
        _before_confirmed_write(backend, lambda: manager.cancel("s-1", "owner-1"))

        with pytest.raises(ConflictError, match="changed during confirmation"):
            await manager.confirm("s-1", "driver-a")

        assert (await backend.get_session("s-1")).status is SessionStatus.CANCELLED
        linked = await backend.get_reservation_for_session("s-1")
        assert linked.status is ReservationStatus.CANCELLED
        assert metrics.get_counter(RESERVATIONS_CONFIRMED_TOTAL) == 0

    @pytest.mark.asyncio
    async def test_session_cancelled_directly_leaves_no_confirmed_reservation(
        self, manager, seeded, backend
    ):
        await manager.reserve("s-1", "driver-a")

        async def withdraw_behind_manager():
            # Session cancelled without touching the reservation
            session = await backend.get_session("s-1")
            session.status = SessionStatus.CANCELLED
            await backend.put_session(session)

        _before_confirmed_write(backend, withdraw_behind_manager)

        with pytest.raises(ConflictError):
            await manager.confirm("s-1", "driver-a")

        [reservation] = [
            await backend.get_reservation(rid) for rid in list(backend._reservations)
        ]
        assert reservation.status is ReservationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_complete_before_reservation_confirmed(
        self, manager, seeded, backend
    ):
        await manager.reserve("s-1", "driver-a")
        _before_confirmed_write(backend, lambda: manager.complete("s-1"))

        reservation = await manager.confirm("s-1", "driver-a")

        assert reservation.status is ReservationStatus.COMPLETED
        assert (await backend.get_session("s-1")).status is SessionStatus.COMPLETED
        [period] = await backend.list_revenue_periods("st-1")
        assert period.sessions_count == 1
        assert period.total_revenue == Decimal("7.70")


class TestCancel:
    @pytest.mark.asyncio
    async def test_holder_cancels_hold(self, manager, seeded, sink, metrics):
        await manager.reserve("s-1", "driver-a")

        cancelled = await manager.cancel("s-1", "driver-a")

        assert cancelled.status is SessionStatus.CANCELLED
        assert cancelled.reserved_by is None
        assert metrics.get_counter(
            RESERVATIONS_CANCELLED_TOTAL, {"from_status": "reserved"}
        ) == 1
        [event] = sink.of_type(MarketEventType.SESSION_CANCELLED)
        assert event.data == {
            "from_status": "reserved",
            "cancelled_by": "driver-a",
            "by_operator": False,
        }

    @pytest.mark.asyncio
    @pytest.mark.parametrize("user_id", ["driver-b", "owner-1"])
    async def test_only_holder_cancels_hold(self, manager, seeded, user_id):
        await manager.reserve("s-1", "driver-a")
        with pytest.raises(ForbiddenError):
            await manager.cancel("s-1", user_id)

    @pytest.mark.asyncio
    async def test_cancel_lapsed_hold(self, manager, seeded, clock):
        await manager.reserve("s-1", "driver-a")
        clock.advance(seconds=300)
        with pytest.raises(ExpiredError):
            await manager.cancel("s-1", "driver-a")

    @pytest.mark.asyncio
    async def test_reservation_holder_cancels_active(self, manager, seeded, backend):
        await manager.reserve("s-1", "driver-a")
        reservation = await manager.confirm("s-1", "driver-a")

        cancelled = await manager.cancel("s-1", "driver-a")

        assert cancelled.status is SessionStatus.CANCELLED
        stored = await backend.get_reservation(reservation.reservation_id)
        assert stored.status is ReservationStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_station_owner_cancels_active(self, manager, seeded, sink):
        await manager.reserve("s-1", "driver-a")
        await manager.confirm("s-1", "driver-a")

        await manager.cancel("s-1", "owner-1")

        [event] = sink.of_type(MarketEventType.SESSION_CANCELLED)
        assert event.user_id == "driver-a"
        assert event.data["by_operator"] is True
        assert event.data["cancelled_by"] == "owner-1"

    @pytest.mark.asyncio
    async def test_operator_flag_cancels_active(self, manager, seeded):
        await manager.reserve("s-1", "driver-a")
        await manager.confirm("s-1", "driver-a")

        cancelled = await manager.cancel("s-1", "support-7", operator=True)
        assert cancelled.status is SessionStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel_active(self, manager, seeded):
        await manager.reserve("s-1", "driver-a")
        await manager.confirm("s-1", "driver-a")
        with pytest.raises(ForbiddenError):
            await manager.cancel("s-1", "driver-b")

    @pytest.mark.asyncio
    async def test_owner_withdraws_available(self, manager, seeded, metrics):
        cancelled = await manager.cancel("s-1", "owner-1")
        assert cancelled.status is SessionStatus.CANCELLED
        assert metrics.get_counter(
            RESERVATIONS_CANCELLED_TOTAL, {"from_status": "available"}
        ) == 1

    @pytest.mark.asyncio
    async def test_driver_cannot_withdraw_available(self, manager, seeded):
        with pytest.raises(ForbiddenError):
            await manager.cancel("s-1", "driver-a")

    @pytest.mark.asyncio
    async def test_cancel_terminal_conflicts(self, manager, seeded):
        await manager.cancel("s-1", "owner-1")
        with pytest.raises(ConflictError, match="already cancelled"):
            await manager.cancel("s-1", "owner-1")

    @pytest.mark.asyncio
    async def test_cancel_unknown_session(self, manager):
        with pytest.raises(NotFoundError):
            await manager.cancel("missing", "driver-a")


class TestComplete:
    @pytest.mark.asyncio
    async def test_complete_rolls_up_revenue(
        self, manager, seeded, backend, clock, sink, metrics, t0
    ):
        await manager.reserve("s-1", "driver-a")
        reservation = await manager.confirm("s-1", "driver-a")
        clock.advance(hours=3)

        completed = await manager.complete("s-1")

        assert completed.status is SessionStatus.COMPLETED
        stored = await backend.get_reservation(reservation.reservation_id)
        assert stored.status is ReservationStatus.COMPLETED
        assert stored.completed_at == t0 + timedelta(hours=3)

        # Session starts 09:00 on the 3rd
        [period] = await backend.list_revenue_periods("st-1")
        assert period.day == t0.date()
        assert period.sessions_count == 1
        assert period.total_kwh == Decimal("22.000")
        assert period.total_revenue == Decimal("7.70")
        assert period.hourly_sessions[9] == 1
        assert metrics.get_counter(SESSIONS_COMPLETED_TOTAL) == 1

        [event] = sink.of_type(MarketEventType.SESSION_COMPLETED)
        assert event.data == {"kwh_delivered": "22.000", "revenue": "7.70"}

    @pytest.mark.asyncio
    async def test_complete_with_delivered_energy(self, manager, seeded, backend):
        await manager.reserve("s-1", "driver-a")
        await manager.confirm("s-1", "driver-a", credits_used=1)

        await manager.complete("s-1", kwh_delivered="10")

        [period] = await backend.list_revenue_periods("st-1")
        assert period.total_kwh == Decimal("10")
        # (10 - 1) * 0.35
        assert period.total_revenue == Decimal("3.15")

    @pytest.mark.asyncio
    async def test_complete_without_reservation(
        self, manager, backend, session_factory
    ):
        await backend.put_session(session_factory(status=SessionStatus.ACTIVE))

        await manager.complete("s-1", kwh_delivered="5")

        [period] = await backend.list_revenue_periods("st-1")
        assert period.total_revenue == Decimal("1.75")

    @pytest.mark.asyncio
    async def test_complete_requires_active(self, manager, seeded):
        await manager.reserve("s-1", "driver-a")
        with pytest.raises(ConflictError) as exc_info:
            await manager.complete("s-1")
        assert exc_info.value.current_status == "reserved"

    @pytest.mark.asyncio
    async def test_completed_session_cannot_be_cancelled(self, manager, seeded):
        await manager.reserve("s-1", "driver-a")
        await manager.confirm("s-1", "driver-a")
        await manager.complete("s-1")
        with pytest.raises(ConflictError):
            await manager.cancel("s-1", "owner-1")


class TestQueries:
    @pytest.mark.asyncio
    async def test_get_session(self, manager, seeded):
        assert (await manager.get_session("s-1")).session_id == "s-1"
        with pytest.raises(NotFoundError):
            await manager.get_session("missing")

    @pytest.mark.asyncio
    async def test_list_available_and_live(
        self, manager, backend, session_factory, station_factory, t0
    ):
        await backend.put_station(station_factory())
        for i, offset in enumerate((3, 1, 2)):
            await backend.put_session(
                session_factory(f"s-{i}", start=t0 + timedelta(hours=offset))
            )

        available = await manager.list_available_sessions("st-1")
        assert [s.session_id for s in available] == ["s-1", "s-2", "s-0"]

        await manager.reserve("s-0", "driver-a")
        await manager.reserve("s-1", "driver-b")
        await manager.confirm("s-1", "driver-b")

        live = await manager.list_live_sessions("st-1")
        assert [(s.session_id, s.status) for s in live] == [
            ("s-1", SessionStatus.ACTIVE),
            ("s-0", SessionStatus.RESERVED),
        ]
        assert [s.session_id for s in await manager.list_available_sessions()] == [
            "s-2"
        ]


class TestNotifications:
    @pytest.mark.asyncio
    async def test_failing_sink_does_not_fail_operation(
        self, backend, config, clock, metrics, seeded
    ):
        manager = ReservationManager(
            backend, config=config, clock=clock, notifier=FailingSink(), metrics=metrics
        )

        result = await manager.reserve("s-1", "driver-a")

        assert result.session.status is SessionStatus.RESERVED
        assert metrics.get_counter(
            NOTIFICATIONS_FAILED_TOTAL, {"event_type": "session_reserved"}
        ) == 1


class TestDefaults:
    def test_metrics_disabled_uses_private_collector(self, backend):
        manager = ReservationManager(backend, config=MarketConfig(metrics_enabled=False))
        assert manager.metrics.prometheus_enabled is False
        assert manager.pricer.metrics is manager.metrics
        assert manager.pricer.config is manager.config.pricing
