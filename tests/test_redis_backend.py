"""
Tests for the Redis backend adapter.

Uses a dict-backed client; no Redis server required.
"""

import time
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from magickit.cache.errors import CacheBackendError, CacheSerializationError
from magickit.cache.patterns import CachePattern
from magickit.cache.redis_backend import BackendResult, CircuitBreaker, RedisBackend
from magickit.cache.store import MISSING

from conftest import FakeClock, make_config


# =============================================================================
# CIRCUIT BREAKER TESTS
# =============================================================================

class TestCircuitBreaker:
    """Test circuit breaker behavior."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(threshold=3, timeout=30, clock=FakeClock())

        for _ in range(2):
            breaker.record_failure()
        assert breaker.is_available()

        breaker.record_failure()
        assert not breaker.is_available()

    def test_half_open_after_timeout(self):
        clock = FakeClock()
        breaker = CircuitBreaker(threshold=3, timeout=30, clock=clock)
        for _ in range(3):
            breaker.record_failure()

        clock.advance(30)
        assert breaker.is_available()

        # One more failure while half-open re-opens immediately
        breaker.record_failure()
        assert not breaker.is_available()

    def test_success_resets(self):
        breaker = CircuitBreaker(threshold=3, timeout=30, clock=FakeClock())
        breaker.record_failure()
        breaker.record_failure()
        breaker.record_success()
        breaker.record_failure()
        assert breaker.is_available()
        assert breaker.state.failures == 1


# =============================================================================
# OPERATION TESTS
# =============================================================================

@pytest.mark.asyncio
class TestBackendOperations:
    """Test operations against the fake client."""

    async def test_connect(self, backend):
        assert await backend.connect() is True
        assert backend.connected

    async def test_set_get(self, backend, redis_client):
        result = await backend.set("k", {"a": [1, 2]}, timedelta(seconds=5))

        assert result.ok
        assert redis_client.ttls[b"k"] == 5000
        assert (await backend.get("k")).value == {"a": [1, 2]}

    async def test_get_missing_key(self, backend):
        result = await backend.get("nope")
        assert result.ok
        assert result.value is MISSING

    async def test_get_none_value(self, backend):
        await backend.set("k", None, timedelta(seconds=5))
        assert (await backend.get("k")).value is None

    async def test_sub_millisecond_ttl_rounds_up(self, backend, redis_client):
        await backend.set("k", 1, timedelta(microseconds=10))
        assert redis_client.ttls[b"k"] == 1

    async def test_delete(self, backend):
        await backend.set("k", 1, timedelta(seconds=5))
        assert (await backend.delete("k")).value is True
        assert (await backend.delete("k")).value is False

    async def test_delete_pattern_glob(self, backend, redis_client):
        for key in ("content:a", "content:b", "media:a"):
            await backend.set(key, 1, timedelta(seconds=5))

        result = await backend.delete_pattern("content:*")

        assert result.value == 2
        assert list(redis_client.data) == [b"media:a"]

    async def test_delete_pattern_regex_filters_client_side(self, backend, redis_client):
        for key in ("content:a", "content:b", "media:a"):
            await backend.set(key, 1, timedelta(seconds=5))

        result = await backend.delete_pattern(CachePattern.regex(r"^content:a$"))

        assert result.value == 1
        assert set(redis_client.data) == {b"content:b", b"media:a"}

    async def test_delete_matching(self, backend, redis_client):
        await backend.set("seo:a", 1, timedelta(seconds=5))
        await backend.set("seo:b", 1, timedelta(seconds=5))

        result = await backend.delete_matching(r"a$")

        assert result.value == 1
        assert list(redis_client.data) == [b"seo:b"]

    async def test_clear(self, backend, redis_client):
        await backend.set("k", 1, timedelta(seconds=5))
        assert (await backend.clear()).ok
        assert redis_client.data == {}

    async def test_introspection(self, backend):
        await backend.set("k", 1, timedelta(seconds=5))
        assert (await backend.key_count()).value == 1
        assert (await backend.memory_usage()).value == 1048576

    async def test_unserializable_value(self, backend, redis_client):
        result = await backend.set("k", object(), timedelta(seconds=5))

        assert not result.ok
        assert isinstance(result.error, CacheSerializationError)
        assert redis_client.data == {}

    async def test_corrupt_payload(self, backend, redis_client):
        redis_client.data[b"k"] = b"\x00not json"
        result = await backend.get("k")
        assert not result.ok
        assert isinstance(result.error, CacheSerializationError)

    async def test_stats(self, backend):
        await backend.set("k", 1, timedelta(seconds=5))
        stats = backend.get_stats()
        assert stats["operations"] == 1
        assert stats["errors"] == 0
        assert stats["circuit_breaker_open"] is False


# =============================================================================
# FAILURE TESTS
# =============================================================================

@pytest.mark.asyncio
class TestBackendFailures:
    """Test that failures come back as results, never exceptions."""

    async def test_connection_error_is_a_result(self, failing_redis_client):
        backend = RedisBackend(make_config(backend_enabled=True), client=failing_redis_client)

        result = await backend.get("k")

        assert isinstance(result, BackendResult)
        assert not result.ok
        assert isinstance(result.error, CacheBackendError)
        assert not backend.connected

    async def test_scan_failure_is_a_result(self, failing_redis_client):
        backend = RedisBackend(make_config(backend_enabled=True), client=failing_redis_client)
        result = await backend.delete_pattern("content:*")
        assert not result.ok

    async def test_circuit_opens_after_repeated_failures(self, failing_redis_client):
        backend = RedisBackend(make_config(backend_enabled=True), client=failing_redis_client)

        for _ in range(3):
            await backend.get("k")
        result = await backend.get("k")

        assert "Circuit breaker is open" in str(result.error)
        assert failing_redis_client.get.await_count == 3
        assert backend.get_stats()["circuit_breaker_open"] is True

    async def test_hanging_call_times_out(self, hanging_redis_client):
        """A command that never completes is abandoned at the deadline."""
        backend = RedisBackend(
            make_config(backend_enabled=True, backend_timeout_seconds=0.2),
            client=hanging_redis_client,
        )
        await backend.connect()

        started = time.monotonic()
        result = await backend.get("k")

        assert time.monotonic() - started < 1.0
        assert not result.ok
        assert "timed out" in str(result.error)
        assert not backend.connected
        assert backend.get_stats()["errors"] == 1

    async def test_recovers_after_success(self, backend, redis_client):
        await backend.connect()
        redis_client.get = AsyncMock(side_effect=RedisConnectionError("reset"))
        await backend.get("k")
        assert not backend.connected

        assert (await backend.ping()).ok
        assert backend.connected

    async def test_no_client(self):
        backend = RedisBackend(make_config(backend_enabled=True))
        result = await backend.get("k")
        assert not result.ok
