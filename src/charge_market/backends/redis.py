# Copyright 2026 Seth Bang
# SPDX-License-Identifier: Apache-2.0
"""
RedisBackend for the Charge Market

This module provides the RedisBackend that shares session state across
processes, with atomic Lua scripts for race-condition-free transitions.

Key Features:
- Session compare-and-set executed as a single Lua script
- Status and station index sets maintained inside the same scripts
- Exact, commutative revenue accumulation with integer micro-units
- One hash tag per namespace so every script's keys share a cluster slot
- Automatic script reload when Redis loses its script cache
"""

import asyncio
import contextlib
import logging
import os
from collections.abc import Awaitable, Iterator
from datetime import date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Any, ClassVar, cast

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import (
    ConnectionError,
    NoScriptError,
    RedisError,
    TimeoutError,
)
from typing_extensions import Self

from ..exceptions import BackendConnectionError, BackendOperationError
from ..types import Reservation, ReservationStatus, RevenuePeriod, Session, Station
from ..types.fields import dump_datetime
from ..types.revenue import HOURS_PER_DAY
from ..types.session import SessionStatus
from .base import BaseBackend, HealthCheckResult, RevenueDelta, SessionTransition

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_MICRO = Decimal(1_000_000)


def _epoch_micros(value: datetime) -> int:
    """Exact integer microseconds since the epoch, comparable inside Lua."""
    return (value - _EPOCH) // timedelta(microseconds=1)


def _to_micro_units(value: Decimal) -> int:
    return int((value * _MICRO).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def _from_micro_units(raw: Any) -> Decimal:
    return Decimal(int(raw or 0)) / _MICRO


def _pairs_to_dict(flat: Any) -> dict[str, str]:
    """Convert a flat HGETALL-style list returned by a script into a dict."""
    items = list(flat)
    return dict(zip(items[::2], items[1::2]))


@contextlib.contextmanager
def _redis_errors(operation: str) -> Iterator[None]:
    """Translate redis-py errors into the library's backend errors."""
    try:
        yield
    except (ConnectionError, TimeoutError) as e:
        logger.error(f"Redis unavailable during {operation}: {e}")
        raise BackendConnectionError(f"Redis unavailable during {operation}") from e
    except RedisError as e:
        logger.error(f"Redis error during {operation}: {e}")
        raise BackendOperationError(f"Redis error during {operation}: {e}") from e


class RedisBackend(BaseBackend):
    """
    A distributed Redis backend for the charge market.

    Key layout (``{ns}`` is a Redis Cluster hash tag):
        cm:{ns}:session:<id>                  session hash
        cm:{ns}:sessions:station:<station>    set of session ids
        cm:{ns}:sessions:status:<status>      set of session ids
        cm:{ns}:holds                         sorted set of held session ids by expiry
        cm:{ns}:station:<id>                  station hash
        cm:{ns}:reservation:<id>              reservation hash
        cm:{ns}:session_reservation:<id>      current reservation id of a session
        cm:{ns}:revenue:<station>:<day>       revenue hash
        cm:{ns}:revenue_days:<station>        sorted set of days

    Session hashes carry an extra ``reserved_until_us`` field (epoch
    microseconds) so the transition script can compare expiry times.

    Deployment Requirements:
    - Redis 4.0+ (multi-field HSET inside scripts)
    """

    # Class-level Lua scripts loaded from files
    _lua_scripts: ClassVar[dict[str, str]] = {}

    SCRIPT_NAMES: ClassVar[tuple[str, ...]] = (
        "session_transition",
        "session_put",
        "revenue_accumulate",
        "reservation_transition",
        "reservation_insert",
    )

    @classmethod
    def _load_lua_scripts(cls) -> None:
        """Load Lua scripts from files at class level."""
        if cls._lua_scripts:
            return  # Already loaded

        lua_dir = Path(__file__).parent / "lua"

        for script_name in cls.SCRIPT_NAMES:
            script_path = lua_dir / f"{script_name}.lua"
            if script_path.exists():
                cls._lua_scripts[script_name] = script_path.read_text(encoding="utf-8")
            else:
                logger.warning(f"Lua script not found: {script_path}")

    def __init__(
        self,
        redis_url: str | None = None,
        redis_client: Any | None = None,
        namespace: str = "charge_market",
        max_connections: int = 10,
        socket_timeout: float = 5.0,
    ) -> None:
        """
        Initialize the Redis backend.

        Args:
            redis_url: Redis connection URL. If not provided, falls back to REDIS_URL
                environment variable, then to "redis://localhost:6379".
            redis_client: Optional pre-configured Redis client; it must be created
                with decode_responses=True
            namespace: Namespace embedded in every key
            max_connections: Maximum connections in the pool
            socket_timeout: Connect and read timeout in seconds

        Environment Variables:
            REDIS_URL: Default Redis connection URL when redis_url parameter is not provided.
        """
        super().__init__(namespace)

        self.redis_url = (
            redis_url or os.environ.get("REDIS_URL") or "redis://localhost:6379"
        )
        self.max_connections = max_connections
        self.socket_timeout = socket_timeout

        self._redis: Any | None = redis_client
        self._owned_redis = redis_client is None
        self._pool: ConnectionPool | None = None
        self._connected = False
        self._connection_lock = asyncio.Lock()

        # Lua script SHAs
        self._script_shas: dict[str, str] = {}

        self.key_prefix = f"cm:{{{namespace}}}"

    # === Keys ===

    def _session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:session:{session_id}"

    def _station_sessions_key(self, station_id: str) -> str:
        return f"{self.key_prefix}:sessions:station:{station_id}"

    def _status_key(self, status: SessionStatus) -> str:
        return f"{self.key_prefix}:sessions:status:{status.value}"

    def _holds_key(self) -> str:
        return f"{self.key_prefix}:holds"

    def _station_key(self, station_id: str) -> str:
        return f"{self.key_prefix}:station:{station_id}"

    def _reservation_key(self, reservation_id: str) -> str:
        return f"{self.key_prefix}:reservation:{reservation_id}"

    def _session_reservation_key(self, session_id: str) -> str:
        return f"{self.key_prefix}:session_reservation:{session_id}"

    def _revenue_key(self, station_id: str, day: date) -> str:
        return f"{self.key_prefix}:revenue:{station_id}:{day.isoformat()}"

    def _revenue_days_key(self, station_id: str) -> str:
        return f"{self.key_prefix}:revenue_days:{station_id}"

    # === Connection ===

    async def _ensure_connected(self) -> Any:
        """Return a live client, connecting and loading scripts on first use."""
        if self._redis is not None and self._connected:
            return self._redis

        async with self._connection_lock:
            if self._redis is not None and self._connected:
                return self._redis

            if self._redis is None:
                self._pool = ConnectionPool.from_url(
                    self.redis_url,
                    max_connections=self.max_connections,
                    decode_responses=True,
                    socket_connect_timeout=self.socket_timeout,
                    socket_timeout=self.socket_timeout,
                    retry_on_timeout=True,
                    health_check_interval=30,
                )
                self._redis = Redis(connection_pool=self._pool)

            try:
                with _redis_errors("connect"):
                    await asyncio.wait_for(
                        cast(Awaitable[bool], self._redis.ping()),
                        timeout=self.socket_timeout,
                    )
                    await asyncio.wait_for(self._load_scripts(), timeout=10.0)
            except asyncio.TimeoutError as e:
                logger.warning("Redis connection/script load timed out")
                await self._drop_owned_connection()
                raise BackendConnectionError("Redis connection timed out") from e
            except BackendConnectionError:
                await self._drop_owned_connection()
                raise

            self._connected = True
            logger.info(f"Connected RedisBackend (namespace '{self.namespace}')")
            return self._redis

    async def _drop_owned_connection(self) -> None:
        """Forget a failed connection so the next call retries from scratch."""
        self._connected = False
        if not self._owned_redis:
            return
        if self._redis is not None:
            await self._cleanup_connection(self._redis)
        self._redis = None
        self._pool = None

    async def _cleanup_connection(self, connection: Any, timeout: float = 2.5) -> None:
        """Clean up Redis connection with timeout protection."""
        try:
            if hasattr(connection, "aclose"):
                await asyncio.wait_for(connection.aclose(), timeout=timeout)
            elif hasattr(connection, "close"):
                await asyncio.wait_for(connection.close(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning("Connection cleanup timed out")
        except Exception as e:
            logger.error(f"Error during connection cleanup: {e}")

    async def _load_scripts(self) -> None:
        """Load Lua scripts into Redis."""
        if not self._redis:
            raise RuntimeError("Redis client not initialized")

        self.__class__._load_lua_scripts()

        for script_name, script_source in self._lua_scripts.items():
            self._script_shas[script_name] = await self._redis.script_load(
                script_source
            )

    async def _evalsha_with_reload(
        self,
        redis_client: Any,
        script_name: str,
        num_keys: int,
        *args: Any,
    ) -> Any:
        """
        Execute EVALSHA with automatic script reload on NoScriptError.

        When Redis restarts or its script cache is flushed, all Lua scripts
        are lost. This method detects the NoScriptError and transparently reloads
        the scripts, then retries the operation once.

        Args:
            redis_client: The Redis client to use
            script_name: Name of the Lua script (key in _lua_scripts)
            num_keys: Number of KEYS arguments
            *args: Keys and arguments for the script

        Returns:
            Result from evalsha

        Raises:
            NoScriptError: If reload and retry also fails
            Other Redis exceptions: Passed through unchanged
        """
        script_sha = self._script_shas.get(script_name)
        if not script_sha:
            await self._load_scripts()
            script_sha = self._script_shas[script_name]

        try:
            return await redis_client.evalsha(script_sha, num_keys, *args)
        except NoScriptError:
            logger.warning(
                f"Script '{script_name}' not found in Redis (SHA: {script_sha}). "
                f"Reloading all Lua scripts..."
            )
            self._script_shas.clear()
            await self._load_scripts()

            # Retry with new SHA (only once to prevent infinite loop)
            new_sha = self._script_shas[script_name]
            logger.info(f"Scripts reloaded. Retrying with new SHA: {new_sha}")
            return await redis_client.evalsha(new_sha, num_keys, *args)

    # === Sessions ===

    async def _read_sessions(self, redis_client: Any, ids: Any) -> list[Session]:
        ids = sorted(ids)
        if not ids:
            return []
        async with redis_client.pipeline(transaction=False) as pipe:
            for session_id in ids:
                pipe.hgetall(self._session_key(session_id))
            rows = await pipe.execute()
        return [Session.from_dict(row) for row in rows if row]

    async def get_session(self, session_id: str) -> Session | None:
        with _redis_errors("get_session"):
            redis_client = await self._ensure_connected()
            data = await redis_client.hgetall(self._session_key(session_id))
        return Session.from_dict(data) if data else None

    async def put_session(self, session: Session) -> None:
        mapping = session.to_dict()
        mapping["reserved_until_us"] = (
            str(_epoch_micros(session.reserved_until))
            if session.reserved_until is not None
            else ""
        )
        other_status_keys = [
            self._status_key(s) for s in SessionStatus if s != session.status
        ]
        flat: list[str] = []
        for field_name, value in mapping.items():
            flat.extend((field_name, value))

        with _redis_errors("put_session"):
            redis_client = await self._ensure_connected()
            await self._evalsha_with_reload(
                redis_client,
                "session_put",
                4 + len(other_status_keys),
                self._session_key(session.session_id),
                self._station_sessions_key(session.station_id),
                self._status_key(session.status),
                self._holds_key(),
                *other_status_keys,
                session.session_id,
                *flat,
            )

    async def transition_session(
        self, session_id: str, transition: SessionTransition
    ) -> Session | None:
        def _opt_micros(value: datetime | None) -> str:
            return "" if value is None else str(_epoch_micros(value))

        price = transition.dynamic_price_per_kwh
        with _redis_errors("transition_session"):
            redis_client = await self._ensure_connected()
            result = await self._evalsha_with_reload(
                redis_client,
                "session_transition",
                4,
                self._session_key(session_id),
                self._status_key(transition.expected_status),
                self._status_key(transition.new_status),
                self._holds_key(),
                session_id,
                transition.expected_status.value,
                transition.new_status.value,
                transition.expected_holder or "",
                _opt_micros(transition.expected_reserved_until),
                _opt_micros(transition.expired_at),
                _opt_micros(transition.valid_at),
                transition.reserved_by or "",
                dump_datetime(transition.reserved_until),
                _opt_micros(transition.reserved_until),
                "" if price is None else str(price),
                dump_datetime(transition.updated_at),
                "1" if transition.clear_price else "",
            )

        if not result:
            logger.debug(
                f"Transition rejected for session {session_id} "
                f"(expected {transition.expected_status.value})"
            )
            return None
        return Session.from_dict(_pairs_to_dict(result))

    async def list_sessions_by_station(
        self,
        station_id: str,
        created_after: datetime | None = None,
        created_before: datetime | None = None,
    ) -> list[Session]:
        with _redis_errors("list_sessions_by_station"):
            redis_client = await self._ensure_connected()
            ids = await redis_client.smembers(self._station_sessions_key(station_id))
            sessions = await self._read_sessions(redis_client, ids)
        return [
            s
            for s in sessions
            if (created_after is None or s.created_at >= created_after)
            and (created_before is None or s.created_at <= created_before)
        ]

    async def list_sessions_by_status(
        self,
        status: SessionStatus,
        station_id: str | None = None,
        limit: int | None = None,
    ) -> list[Session]:
        with _redis_errors("list_sessions_by_status"):
            redis_client = await self._ensure_connected()
            if station_id is None:
                ids = await redis_client.smembers(self._status_key(status))
            else:
                ids = await redis_client.sinter(
                    [self._status_key(status), self._station_sessions_key(station_id)]
                )
            sessions = await self._read_sessions(redis_client, ids)

        # Index membership and hash status can briefly disagree only if a
        # hash was edited outside the scripts; trust the hash.
        matching = [s for s in sessions if s.status == status]
        matching.sort(key=lambda s: s.start_time)
        return matching if limit is None else matching[:limit]

    async def list_expired_holds(
        self, now: datetime, limit: int | None = None
    ) -> list[Session]:
        with _redis_errors("list_expired_holds"):
            redis_client = await self._ensure_connected()
            if limit is None:
                ids = await redis_client.zrangebyscore(
                    self._holds_key(), "-inf", _epoch_micros(now)
                )
            else:
                ids = await redis_client.zrangebyscore(
                    self._holds_key(), "-inf", _epoch_micros(now), start=0, num=limit
                )
            sessions = await self._read_sessions(redis_client, ids)

        lapsed = [
            s
            for s in sessions
            if s.status == SessionStatus.RESERVED and s.is_hold_expired(now)
        ]
        lapsed.sort(key=lambda s: s.reserved_until or now)
        return lapsed

    # === Stations ===

    async def get_station(self, station_id: str) -> Station | None:
        with _redis_errors("get_station"):
            redis_client = await self._ensure_connected()
            data = await redis_client.hgetall(self._station_key(station_id))
        return Station.from_dict(data) if data else None

    async def put_station(self, station: Station) -> None:
        with _redis_errors("put_station"):
            redis_client = await self._ensure_connected()
            await redis_client.hset(
                self._station_key(station.station_id), mapping=station.to_dict()
            )

    # === Reservations ===

    async def insert_reservation(self, reservation: Reservation) -> None:
        flat: list[str] = []
        for field_name, value in reservation.to_dict().items():
            flat.extend((field_name, value))

        with _redis_errors("insert_reservation"):
            redis_client = await self._ensure_connected()
            await self._evalsha_with_reload(
                redis_client,
                "reservation_insert",
                2,
                self._reservation_key(reservation.reservation_id),
                self._session_reservation_key(reservation.session_id),
                self._reservation_key(""),
                reservation.reservation_id,
                *flat,
            )

    async def get_reservation(self, reservation_id: str) -> Reservation | None:
        with _redis_errors("get_reservation"):
            redis_client = await self._ensure_connected()
            data = await redis_client.hgetall(self._reservation_key(reservation_id))
        return Reservation.from_dict(data) if data else None

    async def get_reservation_for_session(
        self, session_id: str
    ) -> Reservation | None:
        with _redis_errors("get_reservation_for_session"):
            redis_client = await self._ensure_connected()
            reservation_id = await redis_client.get(
                self._session_reservation_key(session_id)
            )
        if not reservation_id:
            return None
        return await self.get_reservation(reservation_id)

    async def update_reservation_status(
        self,
        reservation_id: str,
        status: ReservationStatus,
        expected_status: ReservationStatus | None = None,
        completed_at: datetime | None = None,
        session_status: SessionStatus | None = None,
    ) -> Reservation | None:
        with _redis_errors("update_reservation_status"):
            redis_client = await self._ensure_connected()
            key = self._reservation_key(reservation_id)
            # session_id never changes once written
            session_id = await redis_client.hget(key, "session_id")
            if session_id is None:
                return None
            result = await self._evalsha_with_reload(
                redis_client,
                "reservation_transition",
                3,
                key,
                self._session_reservation_key(session_id),
                self._session_key(session_id),
                expected_status.value if expected_status else "",
                status.value,
                dump_datetime(completed_at),
                session_status.value if session_status else "",
            )
        if not result:
            return None
        return Reservation.from_dict(_pairs_to_dict(result))

    # === Revenue ===

    async def accumulate_revenue(
        self, station_id: str, day: date, delta: RevenueDelta
    ) -> None:
        with _redis_errors("accumulate_revenue"):
            redis_client = await self._ensure_connected()
            await self._evalsha_with_reload(
                redis_client,
                "revenue_accumulate",
                2,
                self._revenue_key(station_id, day),
                self._revenue_days_key(station_id),
                station_id,
                day.isoformat(),
                day.toordinal(),
                delta.sessions_count,
                _to_micro_units(delta.total_kwh),
                _to_micro_units(delta.total_revenue),
                delta.auto_pricing_events,
                "" if delta.hour is None else f"h{delta.hour}",
                delta.sessions_count,
            )

    async def list_revenue_periods(
        self, station_id: str, limit: int = 30, until: date | None = None
    ) -> list[RevenuePeriod]:
        max_score: Any = "+inf" if until is None else until.toordinal()
        with _redis_errors("list_revenue_periods"):
            redis_client = await self._ensure_connected()
            days = await redis_client.zrevrangebyscore(
                self._revenue_days_key(station_id), max_score, "-inf", 0, limit
            )
            if not days:
                return []
            async with redis_client.pipeline(transaction=False) as pipe:
                for day in days:
                    pipe.hgetall(self._revenue_key(station_id, date.fromisoformat(day)))
                rows = await pipe.execute()

        return [self._revenue_from_hash(row) for row in rows if row]

    @staticmethod
    def _revenue_from_hash(data: dict[str, str]) -> RevenuePeriod:
        return RevenuePeriod(
            station_id=data["station_id"],
            day=date.fromisoformat(data["day"]),
            sessions_count=int(data.get("sessions_count") or 0),
            total_kwh=_from_micro_units(data.get("total_kwh_u")),
            total_revenue=_from_micro_units(data.get("total_revenue_u")),
            auto_pricing_events=int(data.get("auto_pricing_events") or 0),
            hourly_sessions=tuple(
                int(data.get(f"h{hour}") or 0) for hour in range(HOURS_PER_DAY)
            ),
        )

    # === Health and Maintenance ===

    async def health_check(self) -> HealthCheckResult:
        """Perform health check on the backend."""
        try:
            redis_client = await self._ensure_connected()
            await redis_client.ping()
            info = await redis_client.info()

            return HealthCheckResult(
                healthy=True,
                backend_type="redis",
                namespace=self.namespace,
                metadata={
                    "redis_url": self.redis_url,
                    "connected": self._connected,
                    "redis_version": info.get("redis_version"),
                    "used_memory": info.get("used_memory_human"),
                    "connected_clients": info.get("connected_clients"),
                    "scripts_loaded": len(self._script_shas),
                },
            )
        except Exception as e:
            return HealthCheckResult(
                healthy=False,
                backend_type="redis",
                namespace=self.namespace,
                error=str(e),
            )

    async def get_all_stats(self) -> dict[str, Any]:
        """Get all statistics from the backend."""
        with _redis_errors("get_all_stats"):
            redis_client = await self._ensure_connected()
            async with redis_client.pipeline(transaction=False) as pipe:
                for status in SessionStatus:
                    pipe.scard(self._status_key(status))
                counts = await pipe.execute()

        by_status = {
            status.value: int(count)
            for status, count in zip(SessionStatus, counts, strict=True)
        }
        return {
            "backend_type": "redis",
            "namespace": self.namespace,
            "connected": self._connected,
            "sessions_count": sum(by_status.values()),
            "sessions_by_status": by_status,
            "scripts_loaded": len(self._script_shas),
        }

    async def clear(self) -> None:
        """Delete every key in this backend's namespace.

        Uses SCAN instead of KEYS to avoid blocking Redis during large keyspace scans.
        """
        pattern = f"cm:{{{self.namespace}}}:*"
        with _redis_errors("clear"):
            redis_client = await self._ensure_connected()
            cursor = 0
            while True:
                cursor, keys = await redis_client.scan(cursor, match=pattern, count=100)
                if keys:
                    await redis_client.delete(*keys)
                if cursor == 0:
                    break

    async def cleanup(self) -> None:
        """Clean up backend resources."""
        if self._redis and self._owned_redis:
            try:
                await self._cleanup_connection(self._redis, timeout=2.5)
                if self._pool is not None:
                    await self._pool.disconnect()
            except Exception as e:
                logger.error(f"Error during cleanup: {e}")
            finally:
                self._redis = None
                self._pool = None
        self._connected = False

    async def __aenter__(self) -> Self:
        """Async context manager entry."""
        await self._ensure_connected()
        return self


__all__ = ["RedisBackend"]
