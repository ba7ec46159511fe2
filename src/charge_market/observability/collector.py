# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Unified metrics collector supporting both dict-based and Prometheus metrics.

This module provides the UnifiedMetricsCollector class that serves as the
single source of truth for all metrics in the charge-market library.

Features:
    1. Thread-safe counter/histogram operations
    2. Prometheus metric registration on first use
    3. Dict-based snapshot for JSON export and tests
    4. Label cardinality protection (max 1000 unique combinations per metric)
    5. Optional HTTP server for Prometheus scraping

Usage:
    >>> from charge_market.observability.collector import get_metrics_collector
    >>> collector = get_metrics_collector()
    >>> collector.inc_counter('charge_market_reservations_attempted_total',
    ...                       labels={'outcome': 'success'})
    >>> metrics = collector.get_metrics()

Thread Safety:
    All operations are thread-safe. Uses RLock for reentrant locking.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, ClassVar

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Histogram,
    start_http_server,
)

from .constants import (
    CONFIRMATIONS_REJECTED_TOTAL,
    HOLDS_EXPIRED_TOTAL,
    MULTIPLIER_BUCKETS,
    NOTIFICATIONS_FAILED_TOTAL,
    PRICING_COMPUTATIONS_TOTAL,
    PRICING_EVENTS_FAILED_TOTAL,
    PRICING_MULTIPLIER,
    RECONCILER_ERRORS_TOTAL,
    RECONCILER_SWEEP_DURATION_SECONDS,
    RECONCILER_SWEEPS_TOTAL,
    RESERVATIONS_ATTEMPTED_TOTAL,
    RESERVATIONS_CANCELLED_TOTAL,
    RESERVATIONS_CONFIRMED_TOTAL,
    SESSIONS_COMPLETED_TOTAL,
    SWEEP_DURATION_BUCKETS,
)

logger = logging.getLogger(__name__)


@dataclass
class MetricDefinition:
    """
    Definition for a metric that can be instantiated.

    This dataclass defines the schema for metrics, including their type,
    description, labels, and histogram buckets.
    """

    name: str
    metric_type: str  # 'counter', 'histogram'
    description: str
    label_names: tuple[str, ...] = ()
    buckets: list[float] | None = None


# Pre-defined metrics for the library
METRIC_DEFINITIONS: dict[str, MetricDefinition] = {
    # === Reservation lifecycle ===
    RESERVATIONS_ATTEMPTED_TOTAL: MetricDefinition(
        RESERVATIONS_ATTEMPTED_TOTAL,
        "counter",
        "Total reserve attempts",
        ("outcome",),
    ),
    RESERVATIONS_CONFIRMED_TOTAL: MetricDefinition(
        RESERVATIONS_CONFIRMED_TOTAL,
        "counter",
        "Total reservations confirmed",
        (),
    ),
    CONFIRMATIONS_REJECTED_TOTAL: MetricDefinition(
        CONFIRMATIONS_REJECTED_TOTAL,
        "counter",
        "Total confirmations rejected",
        ("reason",),
    ),
    RESERVATIONS_CANCELLED_TOTAL: MetricDefinition(
        RESERVATIONS_CANCELLED_TOTAL,
        "counter",
        "Total sessions cancelled",
        ("from_status",),
    ),
    SESSIONS_COMPLETED_TOTAL: MetricDefinition(
        SESSIONS_COMPLETED_TOTAL,
        "counter",
        "Total sessions completed",
        (),
    ),
    # === Expiry reconciler ===
    HOLDS_EXPIRED_TOTAL: MetricDefinition(
        HOLDS_EXPIRED_TOTAL,
        "counter",
        "Total lapsed holds released",
        (),
    ),
    RECONCILER_SWEEPS_TOTAL: MetricDefinition(
        RECONCILER_SWEEPS_TOTAL,
        "counter",
        "Total reconciler sweeps",
        (),
    ),
    RECONCILER_ERRORS_TOTAL: MetricDefinition(
        RECONCILER_ERRORS_TOTAL,
        "counter",
        "Total failed reconciler sweeps",
        (),
    ),
    RECONCILER_SWEEP_DURATION_SECONDS: MetricDefinition(
        RECONCILER_SWEEP_DURATION_SECONDS,
        "histogram",
        "Duration of reconciler sweeps",
        (),
        buckets=SWEEP_DURATION_BUCKETS,
    ),
    # === Pricing ===
    PRICING_COMPUTATIONS_TOTAL: MetricDefinition(
        PRICING_COMPUTATIONS_TOTAL,
        "counter",
        "Total price computations",
        ("outcome",),
    ),
    PRICING_MULTIPLIER: MetricDefinition(
        PRICING_MULTIPLIER,
        "histogram",
        "Clamped dynamic price multiplier",
        (),
        buckets=MULTIPLIER_BUCKETS,
    ),
    PRICING_EVENTS_FAILED_TOTAL: MetricDefinition(
        PRICING_EVENTS_FAILED_TOTAL,
        "counter",
        "Total auto-pricing events not recorded",
        (),
    ),
    # === Notifications ===
    NOTIFICATIONS_FAILED_TOTAL: MetricDefinition(
        NOTIFICATIONS_FAILED_TOTAL,
        "counter",
        "Total notification deliveries failed",
        ("event_type",),
    ),
}


class UnifiedMetricsCollector:
    """
    Unified metrics collector supporting both dict-based and Prometheus metrics.

    This class provides:
    1. Thread-safe counter/histogram operations
    2. Prometheus metric registration on first use
    3. Dict-based snapshot for JSON export
    4. Label cardinality protection
    5. Optional HTTP server for Prometheus scraping

    Cardinality Protection:
        To prevent unbounded memory growth, a maximum of MAX_LABEL_COMBINATIONS
        unique label combinations are tracked per metric.

    Example:
        >>> collector = UnifiedMetricsCollector(registry=CollectorRegistry())
        >>> collector.inc_counter('charge_market_holds_expired_total')
        >>> collector.get_metrics()["counters"]
        {'charge_market_holds_expired_total': {'': 1}}
    """

    # Maximum unique label combinations per metric to prevent cardinality explosion
    MAX_LABEL_COMBINATIONS: ClassVar[int] = 1000

    def __init__(
        self,
        enable_prometheus: bool = True,
        registry: CollectorRegistry | None = None,
    ) -> None:
        """
        Initialize the metrics collector.

        Args:
            enable_prometheus: Whether to mirror metrics into Prometheus
            registry: Optional Prometheus CollectorRegistry (tests use a fresh one)
        """
        self._enable_prometheus = enable_prometheus
        self._registry = registry if registry is not None else REGISTRY

        # Dict-based metrics (always available)
        self._counters: dict[str, dict[str, int]] = defaultdict(
            lambda: defaultdict(int)
        )
        self._histograms: dict[str, dict[str, list[float]]] = defaultdict(
            lambda: defaultdict(list)
        )

        self._lock = threading.RLock()

        # Prometheus metric instances (lazy initialized)
        self._prom_counters: dict[str, Any] = {}
        self._prom_histograms: dict[str, Any] = {}

        # Label cardinality tracking
        self._label_combinations: dict[str, set[str]] = defaultdict(set)

        self._server_running = False

        logger.debug(
            f"UnifiedMetricsCollector initialized "
            f"(prometheus={'enabled' if self._enable_prometheus else 'disabled'})"
        )

    def _labels_to_key(self, labels: dict[str, str] | None) -> str:
        """Convert labels dict to a stable string key."""
        if not labels:
            return ""
        return ",".join(f"{k}={v}" for k, v in sorted(labels.items()))

    def _check_cardinality(self, name: str, label_key: str) -> bool:
        """
        Check if adding this label combination would exceed cardinality limit.

        Returns:
            True if the label combination is allowed, False otherwise
        """
        if label_key in self._label_combinations[name]:
            return True
        if len(self._label_combinations[name]) >= self.MAX_LABEL_COMBINATIONS:
            logger.warning(
                f"Cardinality limit ({self.MAX_LABEL_COMBINATIONS}) reached "
                f"for metric {name}. Dropping label combination: {label_key}"
            )
            return False
        self._label_combinations[name].add(label_key)
        return True

    def _get_or_create_prom_counter(self, name: str) -> Any | None:
        """Get or create a Prometheus counter."""
        if not self._enable_prometheus:
            return None

        with self._lock:
            if name not in self._prom_counters:
                defn = METRIC_DEFINITIONS.get(name)
                description = defn.description if defn else f"Dynamic counter: {name}"
                label_names = defn.label_names if defn else ()
                try:
                    self._prom_counters[name] = Counter(
                        name,
                        description,
                        list(label_names),
                        registry=self._registry,
                    )
                except ValueError as e:
                    # Already registered in this registry by another collector
                    logger.warning(f"Failed to create Prometheus counter {name}: {e}")
                    return None

            return self._prom_counters.get(name)

    def _get_or_create_prom_histogram(self, name: str) -> Any | None:
        """Get or create a Prometheus histogram."""
        if not self._enable_prometheus:
            return None

        with self._lock:
            if name not in self._prom_histograms:
                defn = METRIC_DEFINITIONS.get(name)
                buckets = (
                    defn.buckets if defn and defn.buckets else SWEEP_DURATION_BUCKETS
                )
                label_names = defn.label_names if defn else ()
                description = (
                    defn.description if defn else f"Dynamic histogram: {name}"
                )
                try:
                    self._prom_histograms[name] = Histogram(
                        name,
                        description,
                        list(label_names),
                        buckets=buckets,
                        registry=self._registry,
                    )
                except ValueError as e:
                    logger.warning(
                        f"Failed to create Prometheus histogram {name}: {e}"
                    )
                    return None

            return self._prom_histograms.get(name)

    # === Counter Operations ===

    def inc_counter(
        self,
        name: str,
        value: int = 1,
        labels: dict[str, str] | None = None,
    ) -> None:
        """
        Increment a counter metric.

        Args:
            name: Metric name (should follow Prometheus naming convention)
            value: Value to increment by (must be positive)
            labels: Optional labels dict

        Raises:
            ValueError: If value is negative
        """
        if value < 0:
            raise ValueError("Counter increment must be non-negative")

        label_key = self._labels_to_key(labels)

        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            self._counters[name][label_key] += value

        prom_counter = self._get_or_create_prom_counter(name)
        if prom_counter:
            try:
                if labels:
                    prom_counter.labels(**labels).inc(value)
                else:
                    prom_counter.inc(value)
            except ValueError as e:
                logger.debug(f"Prometheus counter update failed for {name}: {e}")

    # === Histogram Operations ===

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: dict[str, str] | None = None,
    ) -> None:
        """Record an observation in a histogram."""
        label_key = self._labels_to_key(labels)

        with self._lock:
            if not self._check_cardinality(name, label_key):
                return
            self._histograms[name][label_key].append(value)
            # Keep only recent observations to prevent memory growth
            if len(self._histograms[name][label_key]) > 10000:
                self._histograms[name][label_key] = self._histograms[name][label_key][
                    -5000:
                ]

        prom_histogram = self._get_or_create_prom_histogram(name)
        if prom_histogram:
            try:
                if labels:
                    prom_histogram.labels(**labels).observe(value)
                else:
                    prom_histogram.observe(value)
            except ValueError as e:
                logger.debug(f"Prometheus histogram observe failed for {name}: {e}")

    # === Snapshot Operations ===

    def get_metrics(self) -> dict[str, Any]:
        """
        Get a snapshot of all metrics.

        Returns a dict suitable for JSON serialization with structure:
        {
            "counters": {"metric_name": {"label_key": value, ...}, ...},
            "histograms": {"metric_name": {"label_key": {...}, ...}, ...}
        }
        """
        with self._lock:
            counters = {
                name: dict(label_values)
                for name, label_values in self._counters.items()
            }

            histograms: dict[str, dict[str, dict[str, Any]]] = {}
            for name, label_values in self._histograms.items():
                histograms[name] = {}
                for label_key, observations in label_values.items():
                    if observations:
                        histograms[name][label_key] = {
                            "count": len(observations),
                            "sum": sum(observations),
                            "avg": sum(observations) / len(observations),
                            "min": min(observations),
                            "max": max(observations),
                        }

        return {
            "counters": counters,
            "histograms": histograms,
        }

    def get_counter(self, name: str, labels: dict[str, str] | None = None) -> int:
        """Current dict-side value of one counter series (0 if never incremented)."""
        with self._lock:
            series = self._counters.get(name)
            if series is None:
                return 0
            return series.get(self._labels_to_key(labels), 0)

    # === Lifecycle ===

    def reset(self) -> None:
        """Reset all dict-side metrics to zero."""
        with self._lock:
            self._counters.clear()
            self._histograms.clear()
            self._label_combinations.clear()

        logger.debug("Metrics collector reset")

    # === Prometheus HTTP Server ===

    def start_http_server(self, host: str = "127.0.0.1", port: int = 9090) -> bool:
        """
        Start the Prometheus HTTP server for metrics scraping.

        Args:
            host: Host to bind to (default: 127.0.0.1 for localhost only).
                  Use "0.0.0.0" for external access in containerized environments.
            port: Port to bind to

        Returns:
            True if server started successfully, False otherwise
        """
        if self._server_running:
            logger.warning("Prometheus server already running")
            return True

        try:
            # start_http_server runs in a daemon thread
            start_http_server(port, addr=host, registry=self._registry)
            self._server_running = True
            logger.info(f"Prometheus metrics server started on {host}:{port}")
            return True
        except OSError as e:
            logger.error(f"Failed to start Prometheus server: {e}")
            return False

    @property
    def prometheus_enabled(self) -> bool:
        """Check if Prometheus metrics are enabled."""
        return self._enable_prometheus

    @property
    def server_running(self) -> bool:
        """Check if the Prometheus HTTP server is running."""
        return self._server_running


# =============================================================================
# Singleton Pattern
# =============================================================================

_global_collector: UnifiedMetricsCollector | None = None
_collector_lock = threading.Lock()


def get_metrics_collector(
    enable_prometheus: bool = True,
) -> UnifiedMetricsCollector:
    """
    Get or create the global metrics collector singleton.

    Thread-safe singleton initialization.

    Args:
        enable_prometheus: Whether to enable Prometheus metrics
            (only used on first call)

    Returns:
        The UnifiedMetricsCollector singleton
    """
    global _global_collector

    if _global_collector is None:
        with _collector_lock:
            if _global_collector is None:
                _global_collector = UnifiedMetricsCollector(
                    enable_prometheus=enable_prometheus
                )

    return _global_collector


def reset_metrics_collector() -> None:
    """
    Reset the global metrics collector singleton (mainly for testing).

    Warning:
        Prometheus series already registered in the default registry stay
        registered; a new singleton reuses nothing from the old one.
    """
    global _global_collector
    with _collector_lock:
        if _global_collector:
            _global_collector.reset()
        _global_collector = None


__all__ = [
    "METRIC_DEFINITIONS",
    "MetricDefinition",
    "UnifiedMetricsCollector",
    "get_metrics_collector",
    "reset_metrics_collector",
]
