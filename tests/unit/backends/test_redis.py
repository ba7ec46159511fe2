from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock, Mock

import pytest
from redis.exceptions import ConnectionError, NoScriptError, RedisError

from charge_market.backends.base import RevenueDelta, SessionTransition
from charge_market.backends.redis import RedisBackend
from charge_market.exceptions import BackendConnectionError, BackendOperationError
from charge_market.types import Reservation, ReservationStatus, SessionStatus


def _flatten(mapping):
    flat = []
    for key, value in mapping.items():
        flat.extend((key, value))
    return flat


class TestRedisBackend:
    @pytest.fixture
    def mock_redis(self):
        mock = AsyncMock()
        mock.script_load.return_value = "mock_sha"
        mock.evalsha.return_value = 1
        mock.ping.return_value = True
        return mock

    @pytest.fixture
    def backend(self, mock_redis):
        backend = RedisBackend(redis_client=mock_redis, namespace="test")
        # Skip the connect/script load round trip
        backend._connected = True
        backend._script_shas = {
            "session_transition": "sha_transition",
            "session_put": "sha_put",
            "revenue_accumulate": "sha_revenue",
            "reservation_transition": "sha_reservation",
            "reservation_insert": "sha_insert",
        }
        return backend

    def test_init_defaults(self, monkeypatch):
        monkeypatch.delenv("REDIS_URL", raising=False)
        backend = RedisBackend(namespace="test")
        assert backend.redis_url == "redis://localhost:6379"
        assert backend.key_prefix == "cm:{test}"
        assert backend._owned_redis is True

    def test_init_reads_redis_url_env(self, monkeypatch):
        monkeypatch.setenv("REDIS_URL", "redis://cache:6380/2")
        assert RedisBackend().redis_url == "redis://cache:6380/2"
        assert RedisBackend(redis_url="redis://other:6379").redis_url == (
            "redis://other:6379"
        )

    def test_keys_share_hash_tag(self, backend):
        assert backend._session_key("s-1") == "cm:{test}:session:s-1"
        assert backend._status_key(SessionStatus.RESERVED) == (
            "cm:{test}:sessions:status:reserved"
        )
        assert backend._revenue_key("st-1", date(2026, 3, 3)) == (
            "cm:{test}:revenue:st-1:2026-03-03"
        )

    @pytest.mark.asyncio
    async def test_get_session(self, backend, mock_redis, session_factory):
        session = session_factory()
        mock_redis.hgetall.return_value = dict(session.to_dict(), reserved_until_us="")
        assert await backend.get_session("s-1") == session
        mock_redis.hgetall.assert_awaited_once_with("cm:{test}:session:s-1")

    @pytest.mark.asyncio
    async def test_get_session_missing(self, backend, mock_redis):
        mock_redis.hgetall.return_value = {}
        assert await backend.get_session("missing") is None

    @pytest.mark.asyncio
    async def test_transition_passes_epoch_micros(
        self, backend, mock_redis, session_factory, t0
    ):
        until = t0 + timedelta(seconds=300)
        held = session_factory(
            status=SessionStatus.RESERVED, reserved_by="driver-a", reserved_until=until
        )
        mock_redis.evalsha.return_value = _flatten(held.to_dict())

        result = await backend.transition_session(
            "s-1",
            SessionTransition(
                expected_status=SessionStatus.AVAILABLE,
                new_status=SessionStatus.RESERVED,
                updated_at=t0,
                reserved_by="driver-a",
                reserved_until=until,
            ),
        )

        assert result == held
        args = mock_redis.evalsha.call_args.args
        assert args[:6] == (
            "sha_transition",
            4,
            "cm:{test}:session:s-1",
            "cm:{test}:sessions:status:available",
            "cm:{test}:sessions:status:reserved",
            "cm:{test}:holds",
        )
        assert args[6:9] == ("s-1", "available", "reserved")
        assert args[13] == "driver-a"
        assert args[15] == str(int(until.timestamp()) * 1_000_000)
        assert args[18] == ""

    @pytest.mark.asyncio
    async def test_transition_passes_clear_price_flag(
        self, backend, mock_redis, session_factory, t0
    ):
        mock_redis.evalsha.return_value = _flatten(session_factory().to_dict())
        await backend.transition_session(
            "s-1",
            SessionTransition(
                expected_status=SessionStatus.RESERVED,
                new_status=SessionStatus.AVAILABLE,
                updated_at=t0,
                expired_at=t0,
                clear_price=True,
            ),
        )
        args = mock_redis.evalsha.call_args.args
        assert args[16] == ""
        assert args[18] == "1"

    @pytest.mark.asyncio
    async def test_transition_rejected(self, backend, mock_redis, t0):
        mock_redis.evalsha.return_value = 0
        result = await backend.transition_session(
            "s-1",
            SessionTransition(
                expected_status=SessionStatus.ACTIVE,
                new_status=SessionStatus.COMPLETED,
                updated_at=t0,
            ),
        )
        assert result is None

    @pytest.mark.asyncio
    async def test_script_reloaded_after_noscript(
        self, backend, mock_redis, session_factory, t0
    ):
        session = session_factory(status=SessionStatus.CANCELLED)
        mock_redis.evalsha.side_effect = [
            NoScriptError("NOSCRIPT No matching script"),
            _flatten(session.to_dict()),
        ]

        result = await backend.transition_session(
            "s-1",
            SessionTransition(
                expected_status=SessionStatus.AVAILABLE,
                new_status=SessionStatus.CANCELLED,
                updated_at=t0,
            ),
        )

        assert result == session
        assert mock_redis.evalsha.call_count == 2
        assert mock_redis.script_load.await_count == len(RedisBackend.SCRIPT_NAMES)
        assert mock_redis.evalsha.call_args.args[0] == "mock_sha"

    @pytest.mark.asyncio
    async def test_connection_error_translated(self, backend, mock_redis):
        mock_redis.hgetall.side_effect = ConnectionError("connection refused")
        with pytest.raises(BackendConnectionError, match="get_session"):
            await backend.get_session("s-1")

    @pytest.mark.asyncio
    async def test_redis_error_translated(self, backend, mock_redis, t0):
        mock_redis.evalsha.side_effect = RedisError("WRONGTYPE")
        with pytest.raises(BackendOperationError, match="WRONGTYPE"):
            await backend.accumulate_revenue(
                "st-1", date(2026, 3, 3), RevenueDelta(auto_pricing_events=1)
            )

    @pytest.mark.asyncio
    async def test_accumulate_revenue_uses_micro_units(self, backend, mock_redis):
        day = date(2026, 3, 3)
        await backend.accumulate_revenue(
            "st-1",
            day,
            RevenueDelta(
                sessions_count=1,
                total_kwh=Decimal("22"),
                total_revenue=Decimal("7.70"),
                hour=9,
            ),
        )
        mock_redis.evalsha.assert_awaited_once_with(
            "sha_revenue",
            2,
            "cm:{test}:revenue:st-1:2026-03-03",
            "cm:{test}:revenue_days:st-1",
            "st-1",
            "2026-03-03",
            day.toordinal(),
            1,
            22_000_000,
            7_700_000,
            0,
            "h9",
            1,
        )

    def test_revenue_from_hash(self):
        period = RedisBackend._revenue_from_hash(
            {
                "station_id": "st-1",
                "day": "2026-03-03",
                "sessions_count": "2",
                "total_kwh_u": "33000000",
                "total_revenue_u": "12760000",
                "auto_pricing_events": "1",
                "h9": "2",
            }
        )
        assert period.total_kwh == Decimal(33)
        assert period.total_revenue == Decimal("12.76")
        assert period.hourly_sessions[9] == 2
        assert period.hourly_sessions[8] == 0

    @pytest.mark.asyncio
    async def test_update_reservation_status_missing(self, backend, mock_redis):
        mock_redis.hget.return_value = None
        assert (
            await backend.update_reservation_status("r-1", ReservationStatus.CANCELLED)
            is None
        )
        mock_redis.evalsha.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_update_reservation_status_passes_link_key(
        self, backend, mock_redis, t0
    ):
        mock_redis.hget.return_value = "s-1"
        mock_redis.evalsha.return_value = [
            "reservation_id", "r-1",
            "session_id", "s-1",
            "user_id", "driver-a",
            "kwh_requested", "22",
            "price_per_kwh", "0.35",
            "total_price", "7.70",
            "status", "confirmed",
            "created_at", t0.isoformat(),
        ]

        reservation = await backend.update_reservation_status(
            "r-1",
            ReservationStatus.CONFIRMED,
            expected_status=ReservationStatus.PENDING,
            session_status=SessionStatus.ACTIVE,
        )

        assert reservation.status is ReservationStatus.CONFIRMED
        mock_redis.evalsha.assert_awaited_once_with(
            "sha_reservation",
            3,
            "cm:{test}:reservation:r-1",
            "cm:{test}:session_reservation:s-1",
            "cm:{test}:session:s-1",
            "pending",
            "confirmed",
            "",
            "active",
        )

    @pytest.mark.asyncio
    async def test_insert_reservation_runs_link_script(self, backend, mock_redis, t0):
        reservation = Reservation(
            reservation_id="r-1",
            session_id="s-1",
            user_id="driver-a",
            kwh_requested=Decimal("22"),
            price_per_kwh=Decimal("0.35"),
            total_price=Decimal("7.70"),
            created_at=t0,
        )
        await backend.insert_reservation(reservation)

        args = mock_redis.evalsha.call_args.args
        assert args[:6] == (
            "sha_insert",
            2,
            "cm:{test}:reservation:r-1",
            "cm:{test}:session_reservation:s-1",
            "cm:{test}:reservation:",
            "r-1",
        )
        assert dict(zip(args[6::2], args[7::2])) == reservation.to_dict()

    @pytest.mark.asyncio
    async def test_list_expired_holds_reads_hold_index(
        self, backend, mock_redis, session_factory, t0
    ):
        lapsed = session_factory(
            status=SessionStatus.RESERVED,
            reserved_by="driver-a",
            reserved_until=t0 - timedelta(seconds=1),
        )
        mock_redis.zrangebyscore.return_value = ["s-1"]
        pipe = Mock()
        pipe.execute = AsyncMock(return_value=[lapsed.to_dict()])
        mock_redis.pipeline = MagicMock()
        mock_redis.pipeline.return_value.__aenter__.return_value = pipe

        result = await backend.list_expired_holds(t0, limit=5)

        assert result == [lapsed]
        mock_redis.zrangebyscore.assert_awaited_once_with(
            "cm:{test}:holds", "-inf", int(t0.timestamp()) * 1_000_000, start=0, num=5
        )

    @pytest.mark.asyncio
    async def test_get_reservation_for_session_without_link(self, backend, mock_redis):
        mock_redis.get.return_value = None
        assert await backend.get_reservation_for_session("s-1") is None
        mock_redis.hgetall.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_health_check_unhealthy(self, backend, mock_redis):
        mock_redis.ping.side_effect = ConnectionError("down")
        result = await backend.health_check()
        assert result.healthy is False
        assert result.backend_type == "redis"
        assert "down" in result.error

    @pytest.mark.asyncio
    async def test_cleanup_leaves_injected_client_open(self, backend, mock_redis):
        await backend.cleanup()
        mock_redis.aclose.assert_not_awaited()
        assert backend._redis is mock_redis
        assert backend._connected is False

    @pytest.mark.asyncio
    async def test_connect_failure_raises_connection_error(self, monkeypatch):
        client = AsyncMock()
        client.ping.side_effect = ConnectionError("refused")
        backend = RedisBackend(redis_client=client, namespace="test")
        with pytest.raises(BackendConnectionError):
            await backend.get_session("s-1")
        assert backend._connected is False
