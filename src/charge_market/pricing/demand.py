# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Demand snapshot provider.

Reduces a station's recent session history and its daily revenue rollups to
the inputs the pricing engine needs: the trailing occupancy rate and the
average number of completed sessions per hour-of-day.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from ..backends.base import BaseBackend
from ..config import PricingConfig
from ..exceptions import (
    BackendConnectionError,
    BackendOperationError,
    DataUnavailableError,
)
from ..types import HOURS_PER_DAY, DemandSnapshot, SessionStatus
from ..types.fields import ensure_utc

logger = logging.getLogger(__name__)


class DemandSnapshotProvider:
    """
    Builds DemandSnapshot objects from backend history.

    Occupancy covers sessions created in the trailing
    ``occupancy_window_hours`` before ``as_of``; hourly averages cover the
    latest ``history_days`` revenue periods up to ``as_of``'s day. A station
    with no history yields an empty snapshot rather than an error.
    """

    def __init__(self, backend: BaseBackend, config: PricingConfig | None = None):
        self.backend = backend
        self.config = config or PricingConfig()

    async def get_demand_snapshot(
        self, station_id: str, as_of: datetime
    ) -> DemandSnapshot:
        """
        Compute the demand snapshot of a station.

        Raises:
            DataUnavailableError: If the backend cannot supply the history
        """
        as_of = ensure_utc(as_of)
        window_start = as_of - timedelta(hours=self.config.occupancy_window_hours)

        try:
            sessions = await self.backend.list_sessions_by_station(
                station_id, created_after=window_start, created_before=as_of
            )
            periods = await self.backend.list_revenue_periods(
                station_id, limit=self.config.history_days, until=as_of.date()
            )
        except (BackendConnectionError, BackendOperationError) as e:
            raise DataUnavailableError(
                f"Demand history unavailable for station {station_id}: {e}",
                station_id=station_id,
            ) from e

        total = len(sessions)
        completed = sum(1 for s in sessions if s.status == SessionStatus.COMPLETED)
        occupancy = Decimal(completed) / Decimal(total) if total else Decimal(0)

        if periods:
            days = Decimal(len(periods))
            hourly_averages = tuple(
                Decimal(sum(p.hourly_sessions[hour] for p in periods)) / days
                for hour in range(HOURS_PER_DAY)
            )
        else:
            hourly_averages = (Decimal(0),) * HOURS_PER_DAY

        snapshot = DemandSnapshot(
            station_id=station_id,
            as_of=as_of,
            occupancy_rate=occupancy,
            total_sessions=total,
            completed_sessions=completed,
            hourly_averages=hourly_averages,
        )
        logger.debug(
            f"Demand snapshot for {station_id}: occupancy={occupancy:.3f} "
            f"({completed}/{total}), history_days={len(periods)}"
        )
        return snapshot


__all__ = ["DemandSnapshotProvider"]
