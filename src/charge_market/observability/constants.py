# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Metric name constants following Prometheus naming conventions.

This module provides standardized metric names for all observability
in the charge-market library. All metric names use the `charge_market_`
prefix for Prometheus compatibility.

Naming Conventions:
    - Counter metrics end with `_total`
    - Histogram metrics for time end with `_seconds`

Label Best Practices:
    To prevent label cardinality explosion, use only:
    - `outcome` - Result of an attempt (enum: success, conflict, not_found)
    - `from_status` - Session status a cancellation started from (enum)

    NEVER use:
    - `session_id` - Unique per session (unbounded!)
    - `user_id` - Unique per user (unbounded!)
    - `station_id` - Grows with supply (unbounded!)

Usage:
    >>> from charge_market.observability.constants import (
    ...     RESERVATIONS_ATTEMPTED_TOTAL, METRIC_PREFIX
    ... )
    >>> print(RESERVATIONS_ATTEMPTED_TOTAL)
    'charge_market_reservations_attempted_total'
"""


# =============================================================================
# Global Prefix
# =============================================================================

METRIC_PREFIX = "charge_market"
"""Prefix for all Prometheus metrics in this library."""


# =============================================================================
# Reservation Lifecycle Metrics (reservation/manager.py)
# =============================================================================

RESERVATIONS_ATTEMPTED_TOTAL = f"{METRIC_PREFIX}_reservations_attempted_total"
"""Total reserve calls, labelled by outcome."""

RESERVATIONS_CONFIRMED_TOTAL = f"{METRIC_PREFIX}_reservations_confirmed_total"
"""Total soft-locks converted into reservations."""

CONFIRMATIONS_REJECTED_TOTAL = f"{METRIC_PREFIX}_confirmations_rejected_total"
"""Total confirm calls rejected, labelled by reason (expired, forbidden, conflict)."""

RESERVATIONS_CANCELLED_TOTAL = f"{METRIC_PREFIX}_reservations_cancelled_total"
"""Total sessions cancelled, labelled by the status they were cancelled from."""

SESSIONS_COMPLETED_TOTAL = f"{METRIC_PREFIX}_sessions_completed_total"
"""Total sessions completed."""


# =============================================================================
# Expiry Reconciler Metrics (reservation/reconciler.py)
# =============================================================================

HOLDS_EXPIRED_TOTAL = f"{METRIC_PREFIX}_holds_expired_total"
"""Total lapsed soft-locks returned to availability."""

RECONCILER_SWEEPS_TOTAL = f"{METRIC_PREFIX}_reconciler_sweeps_total"
"""Total reconciler sweeps."""

RECONCILER_ERRORS_TOTAL = f"{METRIC_PREFIX}_reconciler_errors_total"
"""Total reconciler sweeps that failed."""

RECONCILER_SWEEP_DURATION_SECONDS = f"{METRIC_PREFIX}_reconciler_sweep_duration_seconds"
"""Duration of reconciler sweeps (histogram)."""


# =============================================================================
# Pricing Metrics (pricing/engine.py)
# =============================================================================

PRICING_COMPUTATIONS_TOTAL = f"{METRIC_PREFIX}_pricing_computations_total"
"""Total price computations, labelled by outcome (dynamic, base, fallback)."""

PRICING_MULTIPLIER = f"{METRIC_PREFIX}_pricing_multiplier"
"""Clamped multiplier of dynamic price computations (histogram)."""

PRICING_EVENTS_FAILED_TOTAL = f"{METRIC_PREFIX}_pricing_events_failed_total"
"""Total auto-pricing events that could not be recorded."""


# =============================================================================
# Notification Metrics (notifications.py)
# =============================================================================

NOTIFICATIONS_FAILED_TOTAL = f"{METRIC_PREFIX}_notifications_failed_total"
"""Total lifecycle events the notification sink failed to accept."""


# =============================================================================
# Histogram Buckets
# =============================================================================

SWEEP_DURATION_BUCKETS = [0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 5.0]
"""Buckets for reconciler sweep durations."""

MULTIPLIER_BUCKETS = [0.7, 0.8, 0.9, 1.0, 1.1, 1.2, 1.3, 1.4]
"""Buckets for clamped price multipliers."""


__all__ = [
    "CONFIRMATIONS_REJECTED_TOTAL",
    "HOLDS_EXPIRED_TOTAL",
    "METRIC_PREFIX",
    "MULTIPLIER_BUCKETS",
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
    "SWEEP_DURATION_BUCKETS",
]
