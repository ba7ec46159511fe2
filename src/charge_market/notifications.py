# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Reservation lifecycle events.

The core emits a MarketEvent after every committed transition a user could
care about. Rendering and delivery are left to a NotificationSinkProtocol
implementation; LoggingNotificationSink is the default when none is given.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .protocols.notification import NotificationSinkProtocol

logger = logging.getLogger(__name__)


class MarketEventType(Enum):
    SESSION_RESERVED = "session_reserved"
    RESERVATION_CONFIRMED = "reservation_confirmed"
    SESSION_CANCELLED = "session_cancelled"
    SESSION_COMPLETED = "session_completed"
    RESERVATION_EXPIRED = "reservation_expired"


class MarketEvent(BaseModel):
    """
    A lifecycle event for the notification sink.

    Validated with Pydantic since events leave the core and are handed to
    external sinks.

    Attributes:
        event_type: What happened
        session_id: Session the event is about
        station_id: Station owning the session
        user_id: Driver concerned (holder, former holder or canceller)
        occurred_at: Clock time of the committed transition
        reservation_id: Booking involved, when there is one
        data: Extra event-specific details (price, reserved_until, ...)
    """

    model_config = ConfigDict(frozen=True)

    event_type: MarketEventType
    session_id: str
    station_id: str
    user_id: str | None = None
    occurred_at: datetime
    reservation_id: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _validate_occurred_at(self) -> "MarketEvent":
        """Validate that occurred_at is timezone-aware."""
        if self.occurred_at.tzinfo is None:
            raise ValueError("occurred_at must be timezone-aware")
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict for delivery."""
        return {
            "event_type": self.event_type.value,
            "session_id": self.session_id,
            "station_id": self.station_id,
            "user_id": self.user_id,
            "occurred_at": self.occurred_at.isoformat(),
            "reservation_id": self.reservation_id,
            "data": dict(self.data),
        }


class LoggingNotificationSink:
    """Sink that writes every event to the log."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    async def publish(self, event: MarketEvent) -> None:
        logger.log(
            self.level,
            f"{event.event_type.value}: session={event.session_id} "
            f"station={event.station_id} user={event.user_id}",
        )


class RecordingNotificationSink:
    """Sink that keeps events in memory, for tests and local tooling."""

    def __init__(self) -> None:
        self.events: list[MarketEvent] = []

    async def publish(self, event: MarketEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: MarketEventType) -> list[MarketEvent]:
        return [e for e in self.events if e.event_type == event_type]


async def publish_safely(
    sink: NotificationSinkProtocol,
    event: MarketEvent,
    on_failure: Any | None = None,
) -> bool:
    """
    Deliver an event, absorbing sink failures.

    The transition the event describes has already committed, so a broken
    sink must not turn a successful operation into an error.

    Args:
        sink: Destination sink
        event: Event to deliver
        on_failure: Optional zero-argument callable invoked when delivery fails

    Returns:
        True if the sink accepted the event
    """
    try:
        await sink.publish(event)
        return True
    except Exception as e:
        logger.warning(
            f"Notification sink failed for {event.event_type.value} "
            f"(session {event.session_id}): {e}"
        )
        if on_failure is not None:
            on_failure()
        return False


__all__ = [
    "LoggingNotificationSink",
    "MarketEvent",
    "MarketEventType",
    "RecordingNotificationSink",
    "publish_safely",
]
