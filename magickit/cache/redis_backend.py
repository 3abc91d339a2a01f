"""
Redis Cache Backend

Best-effort shared first tier for the cache service:
- Bounded time per operation (socket timeouts, retry with backoff, and an
  overall asyncio timeout)
- Circuit breaker so a dead Redis fails fast instead of stalling requests
- Every operation returns a BackendResult and never raises

The adapter does not decide what a failure means for callers. The cache
service turns failed results into misses / no-ops and logs them.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Awaitable, Callable, Generic, List, Optional, TypeVar, Union

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError

from magickit.cache.compression import CacheCompressor, ValueCodec
from magickit.cache.config import CacheConfig
from magickit.cache.errors import CacheBackendError, CacheError, CacheSerializationError
from magickit.cache.patterns import CachePattern
from magickit.cache.store import MISSING


logger = logging.getLogger(__name__)

T = TypeVar('T')

SCAN_BATCH_SIZE = 500


@dataclass
class BackendResult(Generic[T]):
    """Outcome of one backend call: a value, or the error that prevented it."""
    ok: bool
    value: Any = None
    error: Optional[CacheError] = None

    @classmethod
    def success(cls, value: Any = None) -> "BackendResult":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: CacheError) -> "BackendResult":
        return cls(ok=False, error=error)


@dataclass
class CircuitBreakerState:
    """Circuit breaker state tracking."""
    failures: int = 0
    last_failure: float = 0.0
    is_open: bool = False
    opened_at: float = 0.0


class CircuitBreaker:
    """
    Circuit breaker for the Redis connection.

    Opens after `threshold` consecutive failures; after `timeout` seconds
    one request is let through (half-open) to probe recovery.
    """

    def __init__(
        self,
        threshold: int = 5,
        timeout: int = 30,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.threshold = threshold
        self.timeout = timeout
        self.state = CircuitBreakerState()
        self._clock = clock

    def is_available(self) -> bool:
        if not self.state.is_open:
            return True

        if self._clock() - self.state.opened_at >= self.timeout:
            self.state.is_open = False
            self.state.failures = self.threshold - 1
            logger.info("Redis circuit breaker half-open, probing backend")
            return True

        return False

    def record_success(self):
        self.state.failures = 0
        self.state.is_open = False

    def record_failure(self):
        self.state.failures += 1
        self.state.last_failure = self._clock()

        if self.state.failures >= self.threshold and not self.state.is_open:
            self.state.is_open = True
            self.state.opened_at = self._clock()
            logger.warning(
                f"Redis circuit breaker opened after {self.state.failures} failures. "
                f"Will retry in {self.timeout} seconds."
            )


@dataclass
class BackendStats:
    """Redis operation statistics."""
    operations: int = 0
    errors: int = 0
    latency_samples: List[float] = field(default_factory=list)

    @property
    def avg_latency_ms(self) -> float:
        recent = self.latency_samples[-100:]
        if not recent:
            return 0.0
        return sum(recent) / len(recent) * 1000

    def record_latency(self, seconds: float):
        self.latency_samples.append(seconds)
        if len(self.latency_samples) > 1000:
            self.latency_samples = self.latency_samples[-1000:]


class RedisBackend:
    """
    Redis tier of the cache.

    `connected` follows the outcome of the most recent call: any backend
    error flips it off, any success flips it back on.
    """

    def __init__(
        self,
        config: CacheConfig,
        client: Optional[Redis] = None,
    ):
        self.config = config
        self._client = client
        self._owns_client = client is None
        self._codec = ValueCodec(CacheCompressor(
            enabled=config.compression_enabled,
            threshold=config.compression_threshold,
        ))
        self._circuit_breaker = CircuitBreaker(
            threshold=config.circuit_breaker_threshold,
            timeout=config.circuit_breaker_timeout,
        ) if config.circuit_breaker_enabled else None
        self._timeout = config.backend_timeout_seconds
        self._bulk_timeout = config.backend_timeout_seconds * 10
        self.stats = BackendStats()
        self.connected = False

    def _create_client(self) -> Redis:
        retry = Retry(
            ExponentialBackoff(
                cap=self.config.backend_retry_delay_ms * 8 / 1000,
                base=self.config.backend_retry_delay_ms / 1000,
            ),
            self.config.backend_max_retries,
        )
        return Redis(
            host=self.config.backend_host,
            port=self.config.backend_port,
            db=self.config.backend_db,
            password=self.config.backend_password,
            socket_timeout=self.config.backend_timeout_seconds,
            socket_connect_timeout=self.config.backend_timeout_seconds,
            retry=retry,
            retry_on_error=[RedisConnectionError, RedisTimeoutError],
            max_connections=self.config.backend_max_connections,
            decode_responses=False,
        )

    async def connect(self) -> bool:
        """Open the connection and ping. Never raises."""
        if self._client is None:
            self._client = self._create_client()

        result = await self.ping()
        if result.ok:
            logger.info(f"Redis cache connected: {self.config.redis_url}")
        else:
            logger.warning(
                f"Redis cache unavailable at {self.config.redis_url}, "
                f"using in-process cache only: {result.error}"
            )
        return result.ok

    async def close(self):
        if self._client is not None and self._owns_client:
            try:
                await self._client.aclose()
            except RedisError as e:
                logger.warning(f"Error closing Redis connection: {e}")
            self._client = None
        self.connected = False
        logger.info("Redis cache closed")

    async def _run(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        timeout: Optional[float] = None,
    ) -> BackendResult:
        """Run one Redis call under the circuit breaker and a deadline."""
        if self._client is None:
            return BackendResult.failure(CacheBackendError("Redis client not connected"))

        if self._circuit_breaker and not self._circuit_breaker.is_available():
            return BackendResult.failure(CacheBackendError("Circuit breaker is open"))

        self.stats.operations += 1
        start_time = time.monotonic()

        try:
            value = await asyncio.wait_for(call(), timeout=timeout or self._timeout)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            self.stats.errors += 1
            self.connected = False
            if self._circuit_breaker:
                self._circuit_breaker.record_failure()
            reason = "timed out" if isinstance(e, asyncio.TimeoutError) else str(e)
            return BackendResult.failure(CacheBackendError(f"Redis {operation} failed: {reason}"))

        self.stats.record_latency(time.monotonic() - start_time)
        self.connected = True
        if self._circuit_breaker:
            self._circuit_breaker.record_success()
        return BackendResult.success(value)

    # =========================================================================
    # Core Operations
    # =========================================================================

    async def ping(self) -> BackendResult:
        return await self._run("ping", lambda: self._client.ping())

    async def get(self, key: str) -> BackendResult:
        """Value is MISSING when Redis has no such key."""
        result = await self._run("get", lambda: self._client.get(key))
        if not result.ok:
            return result
        if result.value is None:
            return BackendResult.success(MISSING)

        try:
            return BackendResult.success(self._codec.decode(result.value))
        except CacheSerializationError as e:
            self.stats.errors += 1
            return BackendResult.failure(e)

    async def set(self, key: str, value: Any, ttl: timedelta) -> BackendResult:
        try:
            payload = self._codec.encode(value)
        except CacheSerializationError as e:
            self.stats.errors += 1
            return BackendResult.failure(e)

        ttl_ms = max(1, int(ttl.total_seconds() * 1000))
        return await self._run("set", lambda: self._client.set(key, payload, px=ttl_ms))

    async def delete(self, key: str) -> BackendResult:
        """Value is True when a key was removed."""
        result = await self._run("delete", lambda: self._client.delete(key))
        if result.ok:
            result.value = bool(result.value)
        return result

    async def clear(self) -> BackendResult:
        return await self._run("flushdb", lambda: self._client.flushdb(), self._bulk_timeout)

    async def delete_pattern(self, pattern: Union[CachePattern, str]) -> BackendResult:
        """
        Delete keys matching a pattern. Value is the count removed.

        Globs go to SCAN MATCH; regex patterns scan everything and filter here.
        """
        if isinstance(pattern, str):
            pattern = CachePattern.glob(pattern)

        async def scan_and_delete() -> int:
            match = pattern.expression if pattern.is_glob else None
            batch = []
            deleted = 0
            async for raw_key in self._client.scan_iter(match=match, count=SCAN_BATCH_SIZE):
                key = raw_key.decode("utf-8", "replace") if isinstance(raw_key, bytes) else raw_key
                if not pattern.is_glob and not pattern.matches(key):
                    continue
                batch.append(raw_key)
                if len(batch) >= SCAN_BATCH_SIZE:
                    deleted += await self._client.delete(*batch)
                    batch = []
            if batch:
                deleted += await self._client.delete(*batch)
            return deleted

        result = await self._run("delete_pattern", scan_and_delete, self._bulk_timeout)
        if result.ok and result.value:
            logger.debug(f"Deleted {result.value} Redis keys matching {pattern}")
        return result

    async def delete_matching(self, regex: str) -> BackendResult:
        """Delete keys a regular expression finds a match in (full key scan)."""
        return await self.delete_pattern(CachePattern.regex(regex))

    # =========================================================================
    # Introspection
    # =========================================================================

    async def key_count(self) -> BackendResult:
        return await self._run("dbsize", lambda: self._client.dbsize())

    async def memory_usage(self) -> BackendResult:
        """Value is Redis used_memory in bytes."""
        result = await self._run("info", lambda: self._client.info("memory"))
        if result.ok:
            result.value = int((result.value or {}).get("used_memory", 0))
        return result

    def get_stats(self) -> dict:
        return {
            "connected": self.connected,
            "operations": self.stats.operations,
            "errors": self.stats.errors,
            "avg_latency_ms": round(self.stats.avg_latency_ms, 2),
            "bytes_saved_compression": self._codec.bytes_saved,
            "circuit_breaker_open": (
                self._circuit_breaker.state.is_open
                if self._circuit_breaker else False
            ),
        }
