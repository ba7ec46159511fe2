# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Protocol for the user-facing notification sink."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from ..notifications import MarketEvent


@runtime_checkable
class NotificationSinkProtocol(Protocol):
    """
    External collaborator informed of reservation lifecycle events.

    The core only emits events; rendering and delivery (push, email, toast)
    belong to the sink. Sinks are called after the state change committed,
    so a failing sink never rolls back or fails the operation.
    """

    async def publish(self, event: MarketEvent) -> None:
        """Deliver a lifecycle event."""
        ...
