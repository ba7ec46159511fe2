# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
Storage backends for the charge market.

This module provides the abstract base class and concrete implementations
for session, reservation, station and revenue storage.

Available backends:
- BaseBackend: Abstract base class defining the backend interface
- MemoryBackend: In-memory backend for single-process deployments
- RedisBackend: Redis-based backend for distributed deployments (requires redis extra)

Supporting types:
- HealthCheckResult: Structured result from backend health checks
- SessionTransition: Conditional write on a single session
- RevenueDelta: Increments for a revenue rollup

Note: RedisBackend is lazily imported to avoid requiring the redis package
when only using MemoryBackend.
"""

from typing import TYPE_CHECKING, cast

from charge_market.backends.base import (
    BaseBackend,
    HealthCheckResult,
    RevenueDelta,
    SessionTransition,
)
from charge_market.backends.memory import MemoryBackend

# Lazy imports for optional redis backend
if TYPE_CHECKING:
    from charge_market.backends.redis import RedisBackend

__all__ = [
    "BaseBackend",
    "HealthCheckResult",
    "MemoryBackend",
    "RedisBackend",
    "RevenueDelta",
    "SessionTransition",
]


def __getattr__(name: str) -> type:
    """Lazy import for optional redis backend components."""
    if name == "RedisBackend":
        try:
            from charge_market.backends import redis as redis_module

            return cast(type, getattr(redis_module, name))
        except ImportError as e:  # pragma: no cover
            raise ImportError(  # pragma: no cover
                f"'{name}' requires the 'redis' extra. "
                "Install with: pip install charge-market[redis]"
            ) from e
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
