"""
Pytest Configuration and Shared Fixtures

Provides common fixtures and configuration for all test modules.
"""

import asyncio
import fnmatch
from datetime import datetime, timedelta
from typing import Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from magickit.cache.config import CacheConfig
from magickit.cache.redis_backend import RedisBackend
from magickit.cache.service import CacheService
from magickit.cdn.config import CDNConfig
from magickit.database.session import get_session_factory, init_db
from magickit.performance.store import SQLAlchemyMetricsStore


# ============================================================================
# Clocks
# ============================================================================

class FakeClock:
    """Monotonic clock that only moves when told to (seconds)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds

    def advance_ms(self, milliseconds: float):
        self.now += milliseconds / 1000


class FakeWallClock:
    """datetime.utcnow replacement for time-window tests."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 6, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def wall_clock() -> FakeWallClock:
    return FakeWallClock()


# ============================================================================
# Cache Fixtures
# ============================================================================

def make_config(**overrides) -> CacheConfig:
    """CacheConfig independent of the test environment's variables."""
    values = dict(
        backend_enabled=False,
        backend_host="localhost",
        backend_port=6379,
        backend_password=None,
        backend_db=0,
        backend_retry_delay_ms=10,
        backend_max_retries=1,
        backend_timeout_seconds=0.5,
        circuit_breaker_threshold=3,
        circuit_breaker_timeout=30,
        compression_enabled=True,
        default_ttl_ms=5 * 60 * 1000,
        sweep_interval_seconds=600,
        coalesce_loads=False,
    )
    values.update(overrides)
    return CacheConfig(**values)


@pytest.fixture
def cache_config() -> CacheConfig:
    return make_config()


@pytest.fixture
def cache(cache_config, clock) -> CacheService:
    """In-process only cache driven by the fake clock."""
    return CacheService(cache_config, clock=clock)


class FakeRedisClient:
    """
    Dict-backed stand-in for a redis.asyncio.Redis client.

    Implements only the commands RedisBackend issues. Expiry is ignored;
    tests that care about TTLs inspect the px argument instead.
    """

    def __init__(self):
        self.data: Dict[bytes, bytes] = {}
        self.ttls: Dict[bytes, int] = {}
        self.ping = AsyncMock(return_value=True)
        self.aclose = AsyncMock()

    @staticmethod
    def _key(key) -> bytes:
        return key.encode() if isinstance(key, str) else key

    async def get(self, key):
        return self.data.get(self._key(key))

    async def set(self, key, value, px=None):
        self.data[self._key(key)] = value
        self.ttls[self._key(key)] = px
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(self._key(key), None) is not None:
                removed += 1
        return removed

    async def flushdb(self):
        self.data.clear()
        return True

    async def scan_iter(self, match=None, count=None):
        for key in list(self.data):
            if match is None or fnmatch.fnmatchcase(key.decode(), match):
                yield key

    async def dbsize(self):
        return len(self.data)

    async def info(self, section=None):
        return {"used_memory": 1024 * 1024}


@pytest.fixture
def redis_client() -> FakeRedisClient:
    return FakeRedisClient()


@pytest.fixture
def backend(redis_client) -> RedisBackend:
    return RedisBackend(make_config(backend_enabled=True), client=redis_client)


@pytest.fixture
def dual_cache(backend, clock) -> CacheService:
    """Cache with both tiers; connect() must still be awaited."""
    return CacheService(make_config(backend_enabled=True), backend=backend, clock=clock)


@pytest.fixture
def failing_redis_client() -> MagicMock:
    """Client whose every command raises a connection error."""
    from redis.exceptions import ConnectionError as RedisConnectionError

    client = MagicMock()
    error = RedisConnectionError("Connection refused")
    for command in ("ping", "get", "set", "delete", "flushdb", "dbsize", "info", "aclose"):
        setattr(client, command, AsyncMock(side_effect=error))
    client.scan_iter = MagicMock(side_effect=error)
    return client


@pytest.fixture
def hanging_redis_client() -> MagicMock:
    """Client that answers ping but never completes a data command."""
    async def never_completes(*args, **kwargs):
        await asyncio.Event().wait()

    client = MagicMock()
    client.ping = AsyncMock(return_value=True)
    client.aclose = AsyncMock()
    for command in ("get", "set", "delete", "flushdb", "dbsize", "info"):
        setattr(client, command, AsyncMock(side_effect=never_completes))
    return client


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def db_engine():
    """In-memory SQLite shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return get_session_factory(db_engine)


@pytest.fixture
def metrics_store(session_factory) -> SQLAlchemyMetricsStore:
    return SQLAlchemyMetricsStore(session_factory)


# ============================================================================
# CDN Fixtures
# ============================================================================

@pytest.fixture
def cdn_config() -> CDNConfig:
    return CDNConfig(
        enabled=True,
        domain="https://cdn.example.com",
        s3_bucket="media",
        s3_region="eu-north-1",
        cloudflare_zone_id=None,
        cloudflare_api_token=None,
    )
