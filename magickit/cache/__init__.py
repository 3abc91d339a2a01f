"""
MagicKit Caching Layer

Dual-tier cache for content, media and dashboard data:
- Tier 1: Redis (shared across workers, optional)
- Tier 2: In-process TTL store (always on, survives Redis outages)

Key components:
- CacheService: get / set / get_or_set / pattern clears over both tiers
- keys: the registry every cache key is built from
- CacheInvalidator: event-driven invalidation after content/media writes
- RedisBackend: bounded, circuit-broken Redis access

Usage:
    cache = CacheService.from_config()
    await cache.connect()

    page = await cache.get_or_set(keys.page_render(slug), render, CacheTTL.PAGE_RENDER)

    invalidator = CacheInvalidator(cache)
    await invalidator.handle_event(CacheEvent.CONTENT_UPDATED, slug=slug)
"""

from magickit.cache import keys
from magickit.cache.config import CacheConfig, CacheTTL, get_cache_config, to_timedelta
from magickit.cache.errors import (
    CacheBackendError,
    CacheError,
    CacheSerializationError,
    InvalidPatternError,
)
from magickit.cache.invalidation import CacheEvent, CacheInvalidator, InvalidationResult
from magickit.cache.keys import CacheKey
from magickit.cache.patterns import CachePattern
from magickit.cache.redis_backend import BackendResult, CircuitBreaker, RedisBackend
from magickit.cache.service import CacheService, WarmUpEntry
from magickit.cache.store import MISSING, CacheEntry, TTLStore

__all__ = [
    # Config
    "CacheConfig",
    "CacheTTL",
    "get_cache_config",
    "to_timedelta",
    # Errors
    "CacheError",
    "CacheBackendError",
    "CacheSerializationError",
    "InvalidPatternError",
    # Keys & patterns
    "keys",
    "CacheKey",
    "CachePattern",
    # Tiers
    "TTLStore",
    "CacheEntry",
    "MISSING",
    "RedisBackend",
    "BackendResult",
    "CircuitBreaker",
    # Service
    "CacheService",
    "WarmUpEntry",
    # Invalidation
    "CacheInvalidator",
    "CacheEvent",
    "InvalidationResult",
]
