"""
Application Context

Builds the cache, invalidator, CDN helper and performance monitor once at
startup and hands them to callers explicitly. Nothing here is a module
global, so tests and embedded apps can run independent instances.

Usage:
    async with await CacheContext.create() as ctx:
        page = await ctx.monitor.monitor_ssr_page(slug, render, cache_key=...)
        await ctx.invalidator.handle_event(CacheEvent.CONTENT_UPDATED, slug=slug)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import sessionmaker

from magickit.cache.config import CacheConfig, get_cache_config
from magickit.cache.invalidation import CacheInvalidator
from magickit.cache.service import CacheService
from magickit.cdn.config import CDNConfig
from magickit.cdn.service import CDNService
from magickit.database.session import create_db_engine, get_session_factory, init_db
from magickit.performance.monitor import PerformanceMonitor
from magickit.performance.store import SQLAlchemyMetricsStore
from magickit.utils.config import Settings, get_settings


logger = logging.getLogger(__name__)


@dataclass
class CacheContext:
    """Everything the cache subsystem needs, wired together."""
    settings: Settings
    config: CacheConfig
    cache: CacheService
    invalidator: CacheInvalidator
    cdn: CDNService
    monitor: PerformanceMonitor

    @classmethod
    async def create(
        cls,
        settings: Optional[Settings] = None,
        cache_config: Optional[CacheConfig] = None,
        cdn_config: Optional[CDNConfig] = None,
        session_factory: Optional[sessionmaker] = None,
        start_sweeper: bool = True,
    ) -> "CacheContext":
        """
        Build and start the subsystem.

        Connects Redis when enabled (an unreachable Redis only logs a
        warning) and starts the expiry sweeper. Without a session_factory
        the metrics database comes from DATABASE_URL and its tables are
        created.
        """
        settings = settings or get_settings()
        config = cache_config or get_cache_config()

        cache = CacheService.from_config(config)
        await cache.connect()

        cdn = CDNService(cdn_config, cache=cache)
        invalidator = CacheInvalidator(cache, cdn=cdn)

        if session_factory is None:
            engine = create_db_engine(settings.DATABASE_URL)
            init_db(engine)
            session_factory = get_session_factory(engine)
        monitor = PerformanceMonitor(cache, SQLAlchemyMetricsStore(session_factory))

        if start_sweeper:
            cache.start_sweeper()

        logger.info(
            f"Cache context ready (environment: {settings.ENVIRONMENT}, "
            f"redis: {'connected' if cache.is_backend_connected else 'off'}, "
            f"cdn: {'on' if cdn.is_enabled() else 'off'})"
        )

        return cls(
            settings=settings,
            config=config,
            cache=cache,
            invalidator=invalidator,
            cdn=cdn,
            monitor=monitor,
        )

    async def cleanup_old_metrics(self) -> int:
        """Prune samples past the METRICS_RETENTION_DAYS window."""
        return await self.monitor.cleanup_old_metrics(self.settings.METRICS_RETENTION_DAYS)

    async def aclose(self):
        await self.cache.close()
        logger.info("Cache context closed")

    async def __aenter__(self) -> "CacheContext":
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.aclose()
