"""Shared fixtures for the charge market test suite."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from charge_market.backends.memory import MemoryBackend
from charge_market.clock import ManualClock
from charge_market.config import MarketConfig
from charge_market.notifications import RecordingNotificationSink
from charge_market.observability.collector import UnifiedMetricsCollector
from charge_market.types import Session, SessionStatus, Station

# Tuesday 08:00 UTC: a peak hour
T0 = datetime(2026, 3, 3, 8, 0, tzinfo=timezone.utc)


def make_session(
    session_id: str = "s-1",
    station_id: str = "st-1",
    start: datetime | None = None,
    hours: float = 2.0,
    available_kw: str = "11",
    base_price: str = "0.35",
    status: SessionStatus = SessionStatus.AVAILABLE,
    created_at: datetime | None = None,
    **kwargs,
) -> Session:
    """Build a session starting one hour after T0 unless told otherwise."""
    start = start or T0 + timedelta(hours=1)
    return Session(
        session_id=session_id,
        station_id=station_id,
        host_id="host-1",
        start_time=start,
        end_time=start + timedelta(hours=hours),
        available_kw=Decimal(available_kw),
        base_price_per_kwh=Decimal(base_price),
        status=status,
        created_at=created_at or T0,
        updated_at=created_at or T0,
        **kwargs,
    )


def make_station(
    station_id: str = "st-1",
    owner_id: str = "owner-1",
    auto_pricing_on: bool = False,
    base_price: str = "0.35",
) -> Station:
    return Station(
        station_id=station_id,
        owner_id=owner_id,
        base_price_per_kwh=Decimal(base_price),
        auto_pricing_on=auto_pricing_on,
        name=f"Station {station_id}",
        power_kw=Decimal("22"),
    )


@pytest.fixture
def clock():
    return ManualClock(T0)


@pytest.fixture
def backend():
    return MemoryBackend(namespace="test")


@pytest.fixture
def metrics():
    """Dict-only collector so tests never touch the global Prometheus registry."""
    return UnifiedMetricsCollector(enable_prometheus=False)


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def config():
    return MarketConfig(soft_lock_ttl=300.0, sweep_interval=15.0)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def session_factory():
    return make_session


@pytest.fixture
def station_factory():
    return make_station
