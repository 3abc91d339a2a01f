"""
Cache Configuration

Centralized configuration for the caching layer.

Settings are read from environment variables when a CacheConfig is built.
The Redis tier is disabled by default in development, where the in-process
store alone is enough.
"""

import os
from dataclasses import dataclass, field
from datetime import timedelta
from functools import lru_cache
from typing import Optional, Union


TTLLike = Union[timedelta, int, float]


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes", "on")


def _backend_enabled_default() -> bool:
    # Redis is opt-in for local development
    environment = os.getenv("ENVIRONMENT", "development").lower()
    return _env_bool("CACHE_BACKEND_ENABLED", "false" if environment == "development" else "true")


def to_timedelta(ttl: Optional[TTLLike]) -> Optional[timedelta]:
    """
    Normalize a TTL value.

    Plain numbers are milliseconds, matching CACHE_DEFAULT_TTL_MS.
    """
    if ttl is None or isinstance(ttl, timedelta):
        return ttl
    if isinstance(ttl, bool) or not isinstance(ttl, (int, float)):
        raise TypeError(f"TTL must be a timedelta or milliseconds, got {type(ttl).__name__}")
    return timedelta(milliseconds=ttl)


@dataclass(frozen=True)
class CacheTTL:
    """
    Cache TTL presets by data type.

    Content and media only change through the admin UI, which invalidates
    explicitly, so TTLs here bound staleness for writes that bypass it.
    """

    DEFAULT: timedelta = timedelta(minutes=5)

    # Content
    CONTENT: timedelta = timedelta(minutes=15)
    CONTENT_LIST: timedelta = timedelta(minutes=5)
    PAGE_RENDER: timedelta = timedelta(minutes=10)
    SEO: timedelta = timedelta(hours=1)

    # Media
    MEDIA: timedelta = timedelta(minutes=30)
    MEDIA_LIST: timedelta = timedelta(minutes=5)

    # System dashboards
    SYSTEM_METRICS: timedelta = timedelta(minutes=1)
    SYSTEM_HEALTH: timedelta = timedelta(seconds=30)

    # Users
    USER_SESSION: timedelta = timedelta(minutes=30)
    USER_PERMISSIONS: timedelta = timedelta(minutes=10)

    # CDN bookkeeping
    CDN_INVALIDATION: timedelta = timedelta(hours=24)

    @classmethod
    def for_namespace(cls, namespace: str) -> timedelta:
        """Get TTL for a cache key namespace."""
        mapping = {
            "content": cls.CONTENT,
            "content-type": cls.CONTENT,
            "content-list": cls.CONTENT_LIST,
            "page-render": cls.PAGE_RENDER,
            "seo": cls.SEO,
            "structured-data": cls.SEO,
            "media": cls.MEDIA,
            "media-list": cls.MEDIA_LIST,
            "media-browser": cls.MEDIA_LIST,
            "system-metrics": cls.SYSTEM_METRICS,
            "system-health": cls.SYSTEM_HEALTH,
            "user-session": cls.USER_SESSION,
            "user-permissions": cls.USER_PERMISSIONS,
            "cdn-invalidation": cls.CDN_INVALIDATION,
        }
        return mapping.get(namespace, cls.DEFAULT)


@dataclass
class CacheConfig:
    """
    Main cache configuration.

    Settings can be overridden via environment variables:
    - CACHE_BACKEND_ENABLED: Use Redis as the shared first tier
    - CACHE_BACKEND_HOST / _PORT / _PASSWORD / _DB: Redis location
    - CACHE_DEFAULT_TTL_MS: TTL applied when callers pass none
    """

    # Redis tier
    backend_enabled: bool = field(default_factory=_backend_enabled_default)
    backend_host: str = field(default_factory=lambda: os.getenv(
        "CACHE_BACKEND_HOST",
        "localhost"
    ))
    backend_port: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_BACKEND_PORT",
        "6379"
    )))
    backend_password: Optional[str] = field(default_factory=lambda: os.getenv(
        "CACHE_BACKEND_PASSWORD"
    ) or None)
    backend_db: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_BACKEND_DB",
        "0"
    )))
    backend_retry_delay_ms: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_BACKEND_RETRY_DELAY_MS",
        "100"
    )))
    backend_max_retries: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_BACKEND_MAX_RETRIES",
        "3"
    )))
    backend_timeout_seconds: float = field(default_factory=lambda: float(os.getenv(
        "CACHE_BACKEND_TIMEOUT_SECONDS",
        "2.0"
    )))
    backend_max_connections: int = 20

    # Circuit breaker
    circuit_breaker_enabled: bool = True
    circuit_breaker_threshold: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_CIRCUIT_BREAKER_THRESHOLD",
        "5"
    )))
    circuit_breaker_timeout: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_CIRCUIT_BREAKER_TIMEOUT",
        "30"
    )))

    # Compression of values sent to Redis
    compression_enabled: bool = field(default_factory=lambda: _env_bool(
        "CACHE_COMPRESSION_ENABLED",
        "true"
    ))
    compression_threshold: int = 1024

    # In-process tier
    default_ttl_ms: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_DEFAULT_TTL_MS",
        str(5 * 60 * 1000)
    )))
    sweep_interval_seconds: int = field(default_factory=lambda: int(os.getenv(
        "CACHE_SWEEP_INTERVAL_SECONDS",
        "600"
    )))

    # Share one loader call among concurrent misses on the same key
    coalesce_loads: bool = field(default_factory=lambda: _env_bool(
        "CACHE_COALESCE_LOADS",
        "false"
    ))

    @property
    def default_ttl(self) -> timedelta:
        return timedelta(milliseconds=self.default_ttl_ms)

    @property
    def redis_url(self) -> str:
        """Redis URL without credentials, for logging."""
        return f"redis://{self.backend_host}:{self.backend_port}/{self.backend_db}"


@lru_cache(maxsize=1)
def get_cache_config() -> CacheConfig:
    """Get process-wide cache configuration read from the environment."""
    return CacheConfig()
