# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Observability and metrics for the Charge Market.

Classes:
    UnifiedMetricsCollector: Unified metrics collector supporting dict and Prometheus.

Protocols:
    MetricsCollectorProtocol: Protocol for metrics collection backends.

Functions:
    get_metrics_collector: Get the global metrics collector singleton.
    reset_metrics_collector: Reset the global metrics collector singleton.

Constants:
    All metric name constants from constants module.
"""

from .collector import (
    METRIC_DEFINITIONS,
    MetricDefinition,
    UnifiedMetricsCollector,
    get_metrics_collector,
    reset_metrics_collector,
)
from .constants import (
    CONFIRMATIONS_REJECTED_TOTAL,
    HOLDS_EXPIRED_TOTAL,
    METRIC_PREFIX,
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
)
from .protocols import MetricsCollectorProtocol

__all__ = [
    "CONFIRMATIONS_REJECTED_TOTAL",
    "HOLDS_EXPIRED_TOTAL",
    "METRIC_DEFINITIONS",
    "METRIC_PREFIX",
    "NOTIFICATIONS_FAILED_TOTAL",
    "PRICING_COMPUTATIONS_TOTAL",
    "PRICING_EVENTS_FAILED_TOTAL",
    "PRICING_MULTIPLIER",
    "RECONCILER_ERRORS_TOTAL",
    "RECONCILER_SWEEPS_TOTAL",
    "RECONCILER_SWEEP_DURATION_SECONDS",
    "RESERVATIONS_ATTEMPTED_TOTAL",
    "RESERVATIONS_CANCELLED_TOTAL",
    "RESERVATIONS_CONFIRMED_TOTAL",
    "SESSIONS_COMPLETED_TOTAL",
    "MetricDefinition",
    "MetricsCollectorProtocol",
    "UnifiedMetricsCollector",
    "get_metrics_collector",
    "reset_metrics_collector",
]
