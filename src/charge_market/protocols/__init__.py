# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Protocol definitions for external collaborators.

This module exports the protocols the core consumes:
- ClockProtocol: Injected source of "now"
- NotificationSinkProtocol: Receiver of reservation lifecycle events
"""

from .clock import ClockProtocol
from .notification import NotificationSinkProtocol

__all__ = [
    "ClockProtocol",
    "NotificationSinkProtocol",
]
