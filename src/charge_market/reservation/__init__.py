# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Session lifecycle: soft-lock reservations and their expiry.

Exports:
    ReservationManager: Owns session state transitions (reserve, confirm,
        cancel, complete)
    ReserveResult: Outcome of a successful reserve
    ExpiryReconciler: Background sweep returning lapsed holds to available
"""

from .manager import ReservationManager, ReserveResult
from .reconciler import ExpiryReconciler

__all__ = ["ExpiryReconciler", "ReservationManager", "ReserveResult"]
