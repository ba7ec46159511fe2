# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""Exception classes for the charge market library.

This module defines the exception hierarchy used throughout the library.
All exceptions inherit from MarketError, making it easy to catch all
marketplace-related exceptions with a single except clause.

The session lifecycle errors (ConflictError, ExpiredError, ForbiddenError,
NotFoundError) are surfaced to callers unchanged. DataUnavailableError is
raised by the demand snapshot provider and absorbed by the pricer, which
falls back to the base price.
"""


class MarketError(Exception):
    """Base exception for all charge market errors.

    Example:
        try:
            await manager.reserve(session_id, user_id)
        except MarketError as e:
            logger.error(f"Reservation failed: {e}")
    """

    pass


class ConflictError(MarketError):
    """Raised when a session's status or holder precondition is not met.

    The atomic conditional write found the session in a different state than
    the transition requires (another caller claimed it first, or it is no
    longer available). Callers must re-fetch the session and retry the user
    action, never the raw call.

    Attributes:
        session_id: The session whose transition was rejected.
        current_status: The status observed when the conflict was detected.
            May be None if the session could not be re-read.

    Example:
        try:
            await manager.reserve(session_id, user_id)
        except ConflictError as e:
            session = await backend.get_session(e.session_id)
            show_unavailable(session)
    """

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        current_status: str | None = None,
    ):
        super().__init__(message)
        self.session_id = session_id
        self.current_status = current_status


class ExpiredError(MarketError):
    """Raised when a soft-lock has passed its reserved_until timestamp.

    Raised by confirm even when the expiry reconciler has not swept the
    session yet. The caller must restart the reservation flow.

    Attributes:
        session_id: The session whose hold lapsed.
        reserved_until: The expiry timestamp of the lapsed hold.
    """

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        reserved_until: object | None = None,
    ):
        super().__init__(message)
        self.session_id = session_id
        self.reserved_until = reserved_until


class ForbiddenError(MarketError):
    """Raised when the actor is not the recorded holder or owner.

    Attributes:
        session_id: The session the actor tried to act on.
        user_id: The rejected actor.
    """

    def __init__(
        self,
        message: str,
        session_id: str | None = None,
        user_id: str | None = None,
    ):
        super().__init__(message)
        self.session_id = session_id
        self.user_id = user_id


class NotFoundError(MarketError):
    """Raised when a session, station or reservation id is unknown.

    Attributes:
        entity: Kind of entity that was looked up ("session", "station", ...).
        entity_id: The identifier that was not found.
    """

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class DataUnavailableError(MarketError):
    """Raised when demand snapshot inputs cannot be read.

    This error never reaches reservation callers: the pricer catches it and
    returns the base price instead.

    Attributes:
        station_id: The station whose history could not be read.
    """

    def __init__(self, message: str, station_id: str | None = None):
        super().__init__(message)
        self.station_id = station_id


class BackendConnectionError(MarketError):
    """Raised when connection to the storage backend fails.

    Example:
        try:
            await backend.get_session(session_id)
        except BackendConnectionError:
            logger.warning("Redis unavailable")
    """

    pass


class BackendOperationError(MarketError):
    """Raised when a backend operation fails after connecting.

    This could be due to data corruption, serialization issues, or
    backend-specific errors such as a failing Lua script.
    """

    pass


class ConfigurationError(MarketError):
    """Raised when configuration is invalid.

    Common causes include:
    - A sweep interval that is not shorter than the soft-lock TTL
    - Malformed environment variable overrides
    - Inverted multiplier clamp bounds
    """

    pass


__all__ = [
    "BackendConnectionError",
    "BackendOperationError",
    "ConfigurationError",
    "ConflictError",
    "DataUnavailableError",
    "ExpiredError",
    "ForbiddenError",
    "MarketError",
    "NotFoundError",
]
