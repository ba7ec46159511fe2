# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for the time source."""

from datetime import datetime
from typing import Protocol, runtime_checkable


@runtime_checkable
class ClockProtocol(Protocol):
    """
    Single source of "now" for every time comparison in the core.

    Injecting the clock keeps soft-lock expiry deterministic under test.
    Implementations must return timezone-aware UTC datetimes.
    """

    def now(self) -> datetime:
        """Current time as a timezone-aware UTC datetime."""
        ...
