# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Dynamic pricing for the charge market.

This module exports:
- compute_dynamic_price: Pure price function (base price, demand, hour)
- compute_price_breakdown: Same computation with its individual adjustments
- DynamicPricer: Best-effort pricing for the reservation flow
- DemandSnapshotProvider: Reduces station history to pricing inputs
"""

from .demand import DemandSnapshotProvider
from .engine import (
    DynamicPricer,
    PriceBreakdown,
    PricingResult,
    compute_dynamic_price,
    compute_price_breakdown,
)

__all__ = [
    "DemandSnapshotProvider",
    "DynamicPricer",
    "PriceBreakdown",
    "PricingResult",
    "compute_dynamic_price",
    "compute_price_breakdown",
]
