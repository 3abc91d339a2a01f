"""
Cache Service

The single entry point for caching. Combines two tiers:
- Redis (shared, optional): read first, written best effort
- In-process TTL store: always written, read when Redis misses or is down

Fail-soft policy lives here and only here: a failed BackendResult becomes a
miss (reads) or a no-op (writes) plus a warning log. Loader errors are not
cache errors and always propagate.
"""

import asyncio
import inspect
import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, Mapping, Optional, Union

from magickit.cache.config import CacheConfig, TTLLike, get_cache_config, to_timedelta
from magickit.cache.patterns import PatternLike, coerce_pattern
from magickit.cache.redis_backend import BackendResult, RedisBackend
from magickit.cache.store import MISSING, Clock, TTLStore


logger = logging.getLogger(__name__)

Loader = Callable[[], Union[Awaitable[Any], Any]]


@dataclass
class WarmUpEntry:
    """One key to pre-populate during warm-up."""
    key: str
    loader: Loader
    ttl: Optional[TTLLike] = None


async def call_loader(loader: Loader) -> Any:
    """Invoke a sync or async loader."""
    result = loader()
    if inspect.isawaitable(result):
        result = await result
    return result


def _as_warm_up_entry(entry: Union[WarmUpEntry, Mapping[str, Any]]) -> WarmUpEntry:
    if isinstance(entry, WarmUpEntry):
        return entry
    return WarmUpEntry(key=entry["key"], loader=entry["loader"], ttl=entry.get("ttl"))


class CacheService:
    """
    Dual-tier cache.

    Values found only in Redis are returned without being copied into the
    in-process tier; each tier is populated by set() alone.
    """

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        backend: Optional[RedisBackend] = None,
        clock: Clock = time.monotonic,
    ):
        self.config = config or get_cache_config()
        self._clock = clock
        self._store = TTLStore(default_ttl=self.config.default_ttl, clock=clock)
        self._backend = backend
        self._probe_interval = self.config.circuit_breaker_timeout
        self._last_probe = -math.inf
        self._hits = 0
        self._misses = 0
        self._pending: Dict[str, asyncio.Future] = {}
        self._sweeper_task: Optional[asyncio.Task] = None
        self._closed = False

    @classmethod
    def from_config(cls, config: Optional[CacheConfig] = None) -> "CacheService":
        """Build a service; the Redis tier exists only when enabled."""
        config = config or get_cache_config()
        backend = RedisBackend(config) if config.backend_enabled else None
        if backend is None:
            logger.info("Redis caching disabled, using in-process cache only")
        return cls(config, backend=backend)

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def connect(self) -> bool:
        if self._backend is None:
            return False
        self._closed = False
        self._last_probe = self._clock()
        return await self._backend.connect()

    async def close(self):
        """Stop the sweeper and Redis; only connect() re-enables Redis."""
        self._closed = True
        await self.stop_sweeper()
        if self._backend is not None:
            await self._backend.close()

    @property
    def is_backend_connected(self) -> bool:
        return self._backend is not None and not self._closed and self._backend.connected

    async def _backend_ready(self) -> bool:
        """
        True when Redis should be tried.

        While disconnected, Redis is probed at most once per probe interval
        so a dead backend doesn't add latency to every call.
        """
        if self._backend is None or self._closed:
            return False
        if self._backend.connected:
            return True

        now = self._clock()
        if now - self._last_probe < self._probe_interval:
            return False
        self._last_probe = now

        result = await self._backend.ping()
        if result.ok:
            logger.info("Redis cache reconnected")
        return result.ok

    def _report(self, operation: str, target: str, result: BackendResult):
        logger.warning(
            f"Redis {operation} failed for {target}, falling back to in-process cache: "
            f"{result.error}"
        )

    # =========================================================================
    # Core Operations
    # =========================================================================

    async def _lookup(self, key: str) -> Any:
        if await self._backend_ready():
            result = await self._backend.get(key)
            if not result.ok:
                self._report("get", key, result)
            elif result.value is not MISSING:
                return result.value

        return self._store.get(key)

    async def get(self, key: str, default: Any = None) -> Any:
        """Get a value, trying Redis first. Returns default when absent."""
        value = await self._lookup(key)
        return default if value is MISSING else value

    async def set(self, key: str, value: Any, ttl: Optional[TTLLike] = None) -> None:
        """Write both tiers. Never fails because of Redis."""
        ttl = to_timedelta(ttl) or self.config.default_ttl
        self._store.set(key, value, ttl)

        if await self._backend_ready():
            result = await self._backend.set(key, value, ttl)
            if not result.ok:
                self._report("set", key, result)

    async def delete(self, key: str) -> bool:
        """Delete from both tiers. True if either had the key."""
        deleted = self._store.delete(key)

        if await self._backend_ready():
            result = await self._backend.delete(key)
            if result.ok:
                deleted = deleted or result.value
            else:
                self._report("delete", key, result)

        return deleted

    async def clear(self) -> None:
        self._store.clear()

        if await self._backend_ready():
            result = await self._backend.clear()
            if not result.ok:
                self._report("clear", "all keys", result)

    async def clear_by_pattern(self, pattern: PatternLike) -> int:
        """
        Delete matching keys from both tiers.

        Strings are globs ("content-list:*"); pass CachePattern.regex(...)
        for a regular expression. Returns the number of in-process entries
        removed; Redis removals are logged at debug level.
        """
        pattern = coerce_pattern(pattern)
        removed = self._store.delete_matching(pattern.compiled)

        if await self._backend_ready():
            result = await self._backend.delete_pattern(pattern)
            if not result.ok:
                # Redis keys left behind still expire on their own TTL
                self._report("pattern delete", str(pattern), result)

        return removed

    # =========================================================================
    # Memoization
    # =========================================================================

    async def get_or_set(
        self,
        key: str,
        loader: Loader,
        ttl: Optional[TTLLike] = None,
    ) -> Any:
        """
        Return the cached value, or run loader once, cache and return it.

        Loader errors propagate and nothing is cached. The load runs in its
        own task, so a caller that gives up doesn't stop it from completing
        and populating the cache. With coalesce_loads, concurrent misses on
        one key share a single load; otherwise each miss runs the loader.
        """
        cached = await self._lookup(key)
        if cached is not MISSING:
            self._hits += 1
            return cached

        self._misses += 1

        task = self._pending.get(key) if self.config.coalesce_loads else None
        if task is None:
            task = asyncio.ensure_future(self._load_and_store(key, loader, ttl))
            task.add_done_callback(lambda t, k=key: self._on_load_done(k, t))
            if self.config.coalesce_loads:
                self._pending[key] = task

        return await asyncio.shield(task)

    async def _load_and_store(self, key: str, loader: Loader, ttl: Optional[TTLLike]) -> Any:
        value = await call_loader(loader)
        await self.set(key, value, ttl)
        return value

    def _on_load_done(self, key: str, task: asyncio.Future):
        if self._pending.get(key) is task:
            del self._pending[key]
        # Mark the error retrieved; callers that are still waiting get it anyway
        if not task.cancelled():
            task.exception()

    async def warm_up(
        self,
        entries: Iterable[Union[WarmUpEntry, Mapping[str, Any]]],
    ) -> Dict[str, bool]:
        """
        Run all loaders concurrently and cache what succeeds.

        A failing loader is logged and skipped. Returns key -> success.
        """
        entries = [_as_warm_up_entry(e) for e in entries]
        logger.info(f"Warming up cache with {len(entries)} entries...")

        async def warm(entry: WarmUpEntry) -> bool:
            try:
                value = await call_loader(entry.loader)
            except Exception as e:
                logger.warning(f"Failed to warm up cache for key {entry.key}: {e}")
                return False
            await self.set(entry.key, value, entry.ttl)
            return True

        outcomes = await asyncio.gather(*(warm(entry) for entry in entries))
        results = {entry.key: ok for entry, ok in zip(entries, outcomes)}

        logger.info(
            f"Cache warm-up completed: {sum(outcomes)}/{len(entries)} entries loaded"
        )
        return results

    # =========================================================================
    # Statistics
    # =========================================================================

    def get_hit_miss_stats(self) -> Dict[str, float]:
        """get_or_set hits/misses; hit_rate is a percentage."""
        total = self._hits + self._misses
        hit_rate = (self._hits / total * 100) if total > 0 else 0.0
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(hit_rate, 2),
        }

    def reset_hit_miss_stats(self):
        self._hits = 0
        self._misses = 0

    async def get_stats(self) -> Dict[str, Any]:
        """Snapshot of both tiers plus hit/miss counters."""
        stats: Dict[str, Any] = {
            "memory": {
                "size": len(self._store),
                "keys": self._store.keys(),
                "memory_usage": self._store.approximate_memory(),
            },
            "redis": None,
            "hit_miss": self.get_hit_miss_stats(),
        }

        if self._backend is None:
            return stats

        if self._backend.connected:
            key_count = await self._backend.key_count()
            memory = await self._backend.memory_usage()
            if key_count.ok and memory.ok:
                stats["redis"] = {
                    "connected": True,
                    "key_count": key_count.value,
                    "memory_usage": memory.value,
                }
                return stats
            self._report("stats", "server info", key_count if not key_count.ok else memory)

        stats["redis"] = {"connected": False, "key_count": 0, "memory_usage": 0}
        return stats

    async def health_check(self) -> Dict[str, Any]:
        """Healthy unless Redis is configured and unreachable."""
        stats = await self.get_stats()
        redis = stats["redis"]
        return {
            "healthy": redis is None or redis["connected"],
            "redis": redis,
            "memory": {
                "size": stats["memory"]["size"],
                "memory_usage": stats["memory"]["memory_usage"],
            },
            "backend": self._backend.get_stats() if self._backend else None,
        }

    # =========================================================================
    # Expiry sweep
    # =========================================================================

    def sweep(self) -> int:
        """Evict expired in-process entries. Redis expires keys natively."""
        removed = self._store.sweep()
        if removed:
            logger.debug(f"Swept {removed} expired cache entries")
        return removed

    def start_sweeper(self, interval_seconds: Optional[float] = None):
        """Start the periodic sweep task. Requires a running event loop."""
        if self._sweeper_task is not None and not self._sweeper_task.done():
            logger.warning("Cache sweeper already running")
            return

        interval = interval_seconds or self.config.sweep_interval_seconds

        async def sweep_loop():
            while True:
                await asyncio.sleep(interval)
                try:
                    self.sweep()
                except Exception as e:
                    logger.error(f"Cache sweep error: {e}")

        self._sweeper_task = asyncio.get_running_loop().create_task(sweep_loop())
        logger.info(f"Cache sweeper started (interval: {interval}s)")

    async def stop_sweeper(self):
        if self._sweeper_task is None:
            return
        self._sweeper_task.cancel()
        try:
            await self._sweeper_task
        except asyncio.CancelledError:
            pass
        self._sweeper_task = None
        logger.info("Cache sweeper stopped")

    @property
    def sweeper_running(self) -> bool:
        return self._sweeper_task is not None and not self._sweeper_task.done()
