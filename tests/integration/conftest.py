"""
Backend fixtures for the integration suite.

Tests requesting ``backend`` run once against MemoryBackend and once against
RedisBackend executing its real Lua scripts on fakeredis.

Requirements for the Redis variant:
    - fakeredis>=2.26.0
    - lupa>=2.0 (Lua support in fakeredis)
"""

import pytest

from charge_market.backends.memory import MemoryBackend
from charge_market.backends.redis import RedisBackend

try:
    import fakeredis.aioredis as fakeredis
except ImportError:
    fakeredis = None

try:
    import lupa
except ImportError:
    lupa = None

REDIS_SKIP_REASON = "fakeredis with lupa is required for Lua scripts"


async def _fresh_client():
    if fakeredis is None or lupa is None:
        pytest.skip(REDIS_SKIP_REASON)
    client = fakeredis.FakeRedis(decode_responses=True)
    await client.flushall()
    return client


@pytest.fixture
async def redis_client():
    """A fakeredis connection with an empty keyspace."""
    client = await _fresh_client()
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
async def redis_backend(redis_client):
    backend = RedisBackend(redis_client=redis_client, namespace="it")
    yield backend
    await backend.cleanup()


@pytest.fixture(params=["memory", "redis"])
async def backend(request):
    if request.param == "memory":
        yield MemoryBackend(namespace="it")
        return

    client = await _fresh_client()
    yield RedisBackend(redis_client=client, namespace="it")
    await client.flushall()
    await client.aclose()
