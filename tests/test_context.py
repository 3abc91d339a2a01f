"""
Tests for wiring the cache subsystem together.
"""

from unittest.mock import patch

import pytest

from magickit.cache import keys
from magickit.cache.invalidation import CacheEvent
from magickit.context import CacheContext
from magickit.database.session import check_db_connection, get_database_url
from magickit.utils.config import Settings

from conftest import make_config


@pytest.fixture
def settings():
    return Settings(ENVIRONMENT="test", METRICS_RETENTION_DAYS=7)


@pytest.mark.asyncio
class TestCacheContext:
    """Test CacheContext startup and shutdown."""

    async def test_create_and_close(self, settings, cdn_config, session_factory):
        context = await CacheContext.create(
            settings=settings,
            cache_config=make_config(),
            cdn_config=cdn_config,
            session_factory=session_factory,
        )

        assert context.cache.sweeper_running
        assert not context.cache.is_backend_connected
        assert context.cdn.is_enabled()

        await context.aclose()
        assert not context.cache.sweeper_running

    async def test_components_share_the_cache(self, settings, cdn_config, session_factory):
        async with await CacheContext.create(
            settings=settings,
            cache_config=make_config(),
            cdn_config=cdn_config,
            session_factory=session_factory,
            start_sweeper=False,
        ) as context:
            await context.cache.set(keys.content("home"), {"title": "Home"})
            await context.invalidator.handle_event(CacheEvent.CONTENT_UPDATED, slug="home")

            assert await context.cache.get(keys.content("home")) is None

            page = await context.monitor.monitor_ssr_page(
                "home", lambda: "<html/>", cache_key=keys.page_render("home")
            )
            assert page == "<html/>"
            assert await context.cache.get(keys.page_render("home")) == "<html/>"

    async def test_cleanup_uses_retention_setting(self, settings, cdn_config, session_factory):
        context = await CacheContext.create(
            settings=settings,
            cache_config=make_config(),
            cdn_config=cdn_config,
            session_factory=session_factory,
            start_sweeper=False,
        )

        with patch.object(context.monitor, "cleanup_old_metrics") as cleanup:
            cleanup.return_value = 0
            await context.cleanup_old_metrics()

        cleanup.assert_called_once_with(7)
        await context.aclose()

    async def test_creates_database_from_url(self, tmp_path, cdn_config):
        settings = Settings(DATABASE_URL=f"sqlite:///{tmp_path / 'metrics.db'}")

        context = await CacheContext.create(
            settings=settings,
            cache_config=make_config(),
            cdn_config=cdn_config,
            start_sweeper=False,
        )

        async with context.monitor.track_request("/api/content"):
            pass
        assert (tmp_path / "metrics.db").exists()
        await context.aclose()


class TestDatabaseSession:
    """Test database URL resolution."""

    def test_postgres_scheme_rewritten(self):
        assert get_database_url("postgres://u:p@host/db") == "postgresql://u:p@host/db"

    def test_explicit_url_kept(self):
        assert get_database_url("sqlite:///x.db") == "sqlite:///x.db"

    def test_connection_check(self, db_engine):
        assert check_db_connection(db_engine) is True
