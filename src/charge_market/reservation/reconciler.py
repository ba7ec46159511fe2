# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Expiry reconciler for soft-locks.

Holds are released by a periodic sweep rather than per-hold timers, so expiry
survives process restarts and works across any number of manager instances
sharing a backend. Every release is a conditional write requiring the hold to
be the one observed and already past its expiry, which makes sweeps
idempotent and safe to run concurrently.
"""

import asyncio
import contextlib
import logging
import time
from datetime import datetime

from typing_extensions import Self

from ..backends.base import BaseBackend, SessionTransition
from ..clock import SystemClock
from ..config import MarketConfig
from ..notifications import (
    LoggingNotificationSink,
    MarketEvent,
    MarketEventType,
    publish_safely,
)
from ..observability.collector import UnifiedMetricsCollector, get_metrics_collector
from ..observability.constants import (
    HOLDS_EXPIRED_TOTAL,
    NOTIFICATIONS_FAILED_TOTAL,
    RECONCILER_ERRORS_TOTAL,
    RECONCILER_SWEEP_DURATION_SECONDS,
    RECONCILER_SWEEPS_TOTAL,
)
from ..observability.protocols import MetricsCollectorProtocol
from ..protocols.clock import ClockProtocol
from ..protocols.notification import NotificationSinkProtocol
from ..types import Session, SessionStatus

logger = logging.getLogger(__name__)


async def release_lapsed_hold(
    backend: BaseBackend,
    session: Session,
    now: datetime,
    notifier: NotificationSinkProtocol,
    metrics: MetricsCollectorProtocol,
) -> bool:
    """
    Return one lapsed hold to AVAILABLE.

    The write is conditioned on the observed holder and expiry and on the
    expiry having passed at now, so a hold that was confirmed, cancelled or
    re-reserved since it was read is left alone. The stamped dynamic price is
    dropped with the hold.

    Returns:
        True if this call released the hold
    """
    released = await backend.transition_session(
        session.session_id,
        SessionTransition(
            expected_status=SessionStatus.RESERVED,
            new_status=SessionStatus.AVAILABLE,
            updated_at=now,
            expected_holder=session.reserved_by,
            expected_reserved_until=session.reserved_until,
            expired_at=now,
            clear_price=True,
        ),
    )
    if released is None:
        # Confirmed, cancelled or released elsewhere since it was read
        logger.debug(f"Hold on session {session.session_id} already resolved")
        return False

    metrics.inc_counter(HOLDS_EXPIRED_TOTAL)
    logger.debug(
        f"Released lapsed hold on session {session.session_id} "
        f"(holder {session.reserved_by})"
    )
    event = MarketEvent(
        event_type=MarketEventType.RESERVATION_EXPIRED,
        session_id=session.session_id,
        station_id=session.station_id,
        user_id=session.reserved_by,
        occurred_at=now,
        data={
            "reserved_until": session.reserved_until.isoformat()
            if session.reserved_until
            else None
        },
    )
    await publish_safely(
        notifier,
        event,
        on_failure=lambda: metrics.inc_counter(
            NOTIFICATIONS_FAILED_TOTAL,
            labels={"event_type": MarketEventType.RESERVATION_EXPIRED.value},
        ),
    )
    return True


class ExpiryReconciler:
    """
    Background task that returns lapsed holds to AVAILABLE.

    Example:
        >>> async with ExpiryReconciler(backend, config=config) as reconciler:
        ...     await serve_forever()

    The loop sleeps sweep_interval seconds between sweeps. Errors in a sweep
    are logged and counted; the loop keeps running until stop() is called.
    """

    def __init__(
        self,
        backend: BaseBackend,
        config: MarketConfig | None = None,
        clock: ClockProtocol | None = None,
        notifier: NotificationSinkProtocol | None = None,
        metrics: MetricsCollectorProtocol | None = None,
    ) -> None:
        self.backend = backend
        self.config = config or MarketConfig()
        self.clock = clock or SystemClock()
        self.notifier = notifier or LoggingNotificationSink()
        if metrics is None:
            metrics = (
                get_metrics_collector()
                if self.config.metrics_enabled
                else UnifiedMetricsCollector(enable_prometheus=False)
            )
        self.metrics = metrics

        self._running = False
        self._sweep_task: asyncio.Task[None] | None = None

    @property
    def is_running(self) -> bool:
        return self._sweep_task is not None and not self._sweep_task.done()

    async def start(self) -> None:
        """Start the background sweep task. No-op if it is already running."""
        if self._sweep_task is None or self._sweep_task.done():
            self._running = True
            self._sweep_task = asyncio.create_task(
                self._sweep_loop(),
                name="charge_market_expiry_reconciler",
            )
            logger.info(
                f"Started expiry reconciler (interval={self.config.sweep_interval}s, "
                f"ttl={self.config.soft_lock_ttl}s)"
            )

    async def stop(self) -> None:
        """
        Stop the background sweep task.

        Waits up to sweep_cancel_timeout seconds for the cancelled task to
        finish.
        """
        self._running = False
        task = self._sweep_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, asyncio.TimeoutError):
                await asyncio.wait_for(task, timeout=self.config.sweep_cancel_timeout)
        self._sweep_task = None
        logger.info("Stopped expiry reconciler")

    async def __aenter__(self) -> Self:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.stop()

    async def sweep_once(self) -> int:
        """
        Release every hold whose expiry has passed.

        At most sweep_batch_size holds are released per call; the rest are
        picked up by the next sweep.

        Returns:
            Number of holds released by this call
        """
        started = time.perf_counter()
        now = self.clock.now()

        lapsed = await self.backend.list_expired_holds(
            now, limit=self.config.sweep_batch_size
        )

        released = 0
        for session in lapsed:
            if await self._release(session, now):
                released += 1

        self.metrics.inc_counter(RECONCILER_SWEEPS_TOTAL)
        self.metrics.observe_histogram(
            RECONCILER_SWEEP_DURATION_SECONDS, time.perf_counter() - started
        )
        return released

    async def _release(self, session: Session, now: datetime) -> bool:
        return await release_lapsed_hold(
            self.backend, session, now, self.notifier, self.metrics
        )

    async def _sweep_loop(self) -> None:
        """
        Background task releasing lapsed holds.

        Runs every sweep_interval seconds and calls sweep_once.
        """
        while self._running:
            try:
                await asyncio.sleep(self.config.sweep_interval)
                released = await self.sweep_once()
                if released > 0:
                    logger.info(f"Expiry sweep released {released} lapsed holds")
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.metrics.inc_counter(RECONCILER_ERRORS_TOTAL)
                logger.error(f"Expiry sweep error: {e}", exc_info=True)


__all__ = ["ExpiryReconciler", "release_lapsed_hold"]
