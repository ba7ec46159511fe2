# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Dynamic pricing engine.

compute_dynamic_price() is a pure function of (base price, demand snapshot,
hour). It starts from a multiplier of 1.0, adds the occupancy, hourly-demand
and time-of-day deltas configured in PricingConfig, clamps the result and
rounds the price half-up to cents. All arithmetic is Decimal.

DynamicPricer wraps the engine for the reservation flow: it looks up the
station and its demand snapshot, degrades to the base price when data is
missing, and records one auto-pricing event per dynamic computation in the
background.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from ..backends.base import BaseBackend, RevenueDelta
from ..clock import SystemClock
from ..config import PricingConfig
from ..exceptions import DataUnavailableError
from ..observability.constants import (
    PRICING_COMPUTATIONS_TOTAL,
    PRICING_EVENTS_FAILED_TOTAL,
    PRICING_MULTIPLIER,
)
from ..observability.protocols import MetricsCollectorProtocol
from ..protocols.clock import ClockProtocol
from ..types import DemandSnapshot, Session, Station
from ..types.fields import MONEY_QUANTUM, to_decimal
from .demand import DemandSnapshotProvider

logger = logging.getLogger(__name__)

_ONE = Decimal(1)
_ZERO = Decimal(0)


@dataclass(frozen=True)
class PriceBreakdown:
    """
    The adjustments behind one price computation.

    Attributes:
        base_price: Input price
        occupancy_delta: Occupancy band adjustment
        demand_delta: Hourly-demand adjustment
        time_delta: Peak or off-peak adjustment
        raw_multiplier: 1.0 plus all deltas, before clamping
        multiplier: Clamped multiplier
        price: base_price * multiplier, rounded half-up to cents
    """

    base_price: Decimal
    occupancy_delta: Decimal = _ZERO
    demand_delta: Decimal = _ZERO
    time_delta: Decimal = _ZERO
    raw_multiplier: Decimal = _ONE
    multiplier: Decimal = _ONE
    price: Decimal = _ZERO

    @property
    def clamped(self) -> bool:
        return self.raw_multiplier != self.multiplier


def _occupancy_delta(rate: Decimal, config: PricingConfig) -> Decimal:
    # Bands are exclusive; first match wins.
    if rate > config.occupancy_high_threshold:
        return config.occupancy_high_delta
    if rate > config.occupancy_mid_threshold:
        return config.occupancy_mid_delta
    if rate < config.occupancy_low_threshold:
        return config.occupancy_low_delta
    return _ZERO


def _demand_delta(demand: DemandSnapshot, hour: int, config: PricingConfig) -> Decimal:
    overall = demand.all_hours_average
    if overall <= 0:
        return _ZERO
    ratio = demand.hourly_averages[hour] / overall
    if ratio > config.demand_high_ratio:
        return config.demand_high_delta
    if ratio < config.demand_low_ratio:
        return config.demand_low_delta
    return _ZERO


def _time_delta(hour: int, config: PricingConfig) -> Decimal:
    if hour in config.peak_hours:
        return config.peak_delta
    if hour in config.off_peak_hours:
        return config.off_peak_delta
    return _ZERO


def compute_price_breakdown(
    base_price: Decimal | float | str,
    demand: DemandSnapshot | None,
    hour: int,
    config: PricingConfig | None = None,
) -> PriceBreakdown:
    """
    Compute a dynamic price together with the adjustments that produced it.

    A missing or empty snapshot (no recent sessions and no hourly history)
    leaves the base price unchanged.

    Raises:
        ValueError: If hour is outside 0..23 or base_price is negative
    """
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be within 0..23, got {hour}")
    config = config or PricingConfig()
    base = to_decimal(base_price)
    if base < 0:
        raise ValueError("base_price must not be negative")

    if demand is None or demand.is_empty:
        return PriceBreakdown(base_price=base, price=base)

    occupancy = _occupancy_delta(demand.occupancy_rate, config)
    hourly = _demand_delta(demand, hour, config)
    time_of_day = _time_delta(hour, config)

    raw = _ONE + occupancy + hourly + time_of_day
    multiplier = min(max(raw, config.min_multiplier), config.max_multiplier)
    price = (base * multiplier).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)

    return PriceBreakdown(
        base_price=base,
        occupancy_delta=occupancy,
        demand_delta=hourly,
        time_delta=time_of_day,
        raw_multiplier=raw,
        multiplier=multiplier,
        price=price,
    )


def compute_dynamic_price(
    base_price: Decimal | float | str,
    demand: DemandSnapshot | None,
    hour: int,
    config: PricingConfig | None = None,
) -> Decimal:
    """
    Price for a session given current demand and the hour of day.

    Example:
        >>> snapshot = DemandSnapshot(
        ...     station_id="st-1", as_of=now, occupancy_rate=Decimal("0.9"),
        ...     total_sessions=10, completed_sessions=9,
        ... )
        >>> compute_dynamic_price(Decimal("0.35"), snapshot, hour=8)
        Decimal('0.46')
    """
    return compute_price_breakdown(base_price, demand, hour, config).price


@dataclass(frozen=True)
class PricingResult:
    """
    Outcome of pricing a session.

    Attributes:
        price: Price per kWh to offer
        outcome: "dynamic", "base" (auto-pricing off or no history) or
            "fallback" (demand data unavailable)
        priced_at: Clock time the price was computed for
        breakdown: Adjustments, for dynamic prices only
    """

    price: Decimal
    outcome: str
    priced_at: datetime
    breakdown: PriceBreakdown | None = None

    @property
    def is_dynamic(self) -> bool:
        return self.outcome == "dynamic"


class DynamicPricer:
    """
    Prices sessions for the reservation flow.

    Pricing is best effort: station lookups that find nothing, disabled
    auto-pricing, missing history and unavailable demand data all yield the
    session's base price instead of an error. Each dynamic computation
    schedules one auto-pricing event on the station's revenue period for the
    day; recording runs as a tracked background task so it never delays or
    fails the caller. Call drain() on shutdown to wait for pending events.
    """

    def __init__(
        self,
        backend: BaseBackend,
        provider: DemandSnapshotProvider | None = None,
        config: PricingConfig | None = None,
        clock: ClockProtocol | None = None,
        metrics: MetricsCollectorProtocol | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or PricingConfig()
        self.provider = provider or DemandSnapshotProvider(backend, self.config)
        self.clock = clock or SystemClock()
        self.metrics = metrics
        self._pending_events: set[asyncio.Task[None]] = set()

    async def price_session(
        self, session: Session, station: Station | None = None
    ) -> PricingResult:
        """Compute the price to stamp on a session being reserved."""
        now = self.clock.now()
        base = session.base_price_per_kwh

        if station is None:
            station = await self.backend.get_station(session.station_id)
        if station is None or not station.auto_pricing_on:
            return self._result(base, "base", now)

        try:
            snapshot = await self.provider.get_demand_snapshot(station.station_id, now)
        except DataUnavailableError as e:
            logger.warning(
                f"Demand data unavailable for station {station.station_id}, "
                f"using base price: {e}"
            )
            return self._result(base, "fallback", now)

        if snapshot.is_empty:
            return self._result(base, "base", now)

        breakdown = compute_price_breakdown(base, snapshot, now.hour, self.config)
        if self.metrics is not None:
            self.metrics.observe_histogram(
                PRICING_MULTIPLIER, float(breakdown.multiplier)
            )
        logger.debug(
            f"Dynamic price for session {session.session_id}: {base} x "
            f"{breakdown.multiplier} = {breakdown.price}"
        )
        self._record_pricing_event(station.station_id, now)
        return self._result(breakdown.price, "dynamic", now, breakdown)

    def _result(
        self,
        price: Decimal,
        outcome: str,
        now: datetime,
        breakdown: PriceBreakdown | None = None,
    ) -> PricingResult:
        if self.metrics is not None:
            self.metrics.inc_counter(
                PRICING_COMPUTATIONS_TOTAL, labels={"outcome": outcome}
            )
        return PricingResult(
            price=price, outcome=outcome, priced_at=now, breakdown=breakdown
        )

    def _record_pricing_event(self, station_id: str, now: datetime) -> None:
        task = asyncio.create_task(
            self.backend.accumulate_revenue(
                station_id, now.date(), RevenueDelta(auto_pricing_events=1)
            )
        )
        self._pending_events.add(task)
        task.add_done_callback(self._on_event_done)

    def _on_event_done(self, task: "asyncio.Task[Any]") -> None:
        self._pending_events.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning(f"Failed to record auto-pricing event: {exc}")
            if self.metrics is not None:
                self.metrics.inc_counter(PRICING_EVENTS_FAILED_TOTAL)

    @property
    def pending_events(self) -> int:
        return len(self._pending_events)

    async def drain(self) -> None:
        """Wait for every scheduled auto-pricing event to finish."""
        while self._pending_events:
            await asyncio.gather(*list(self._pending_events), return_exceptions=True)


__all__ = [
    "DynamicPricer",
    "PriceBreakdown",
    "PricingResult",
    "compute_dynamic_price",
    "compute_price_breakdown",
]
