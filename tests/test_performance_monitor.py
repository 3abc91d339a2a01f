"""
Tests for request timing and performance statistics.

These tests verify:
- Percentiles use nearest rank without interpolation
- SSR monitoring records hits, misses and errors
- Time-window queries, DB query stats and retention cleanup
- Per-request scoring
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import MagicMock

import pytest

from magickit.performance.models import (
    PerformanceMetricSample,
    PerformanceStats,
    PerformanceThresholds,
    RequestProfile,
)
from magickit.performance.monitor import (
    CLIENT_CLOSED_REQUEST,
    PerformanceMonitor,
    analyze_performance,
    compute_stats,
    create_request_id,
    format_metrics,
    percentile,
)

from conftest import FakeClock


@pytest.fixture
def timer():
    return FakeClock(start=0.0)


@pytest.fixture
def monitor(cache, metrics_store, timer, wall_clock):
    return PerformanceMonitor(cache, metrics_store, timer=timer, now=wall_clock)


def sample(response_time_ms, endpoint="/api/content", status_code=200, cache_hit=False, **kwargs):
    kwargs.setdefault("timestamp", datetime(2024, 6, 1, 12, 0, 0))
    return PerformanceMetricSample(
        endpoint=endpoint,
        method="GET",
        response_time_ms=response_time_ms,
        status_code=status_code,
        cache_hit=cache_hit,
        **kwargs,
    )


# =============================================================================
# AGGREGATION TESTS
# =============================================================================

class TestAggregation:
    """Test pure statistics helpers."""

    def test_percentiles(self):
        """Scenario: 100 samples 10..1000 give p95=960 and p99=1000."""
        stats = compute_stats([sample(ms) for ms in range(10, 1001, 10)])

        assert stats.p95_response_time == 960
        assert stats.p99_response_time == 1000
        assert stats.average_response_time == 505
        assert stats.total_requests == 100

    def test_percentile_clamps_to_last(self):
        assert percentile([1, 2, 3], 1.0) == 3
        assert percentile([], 0.95) == 0

    def test_empty_window_is_all_zeros(self):
        assert compute_stats([]) == PerformanceStats()

    def test_rates(self):
        stats = compute_stats([
            sample(100, cache_hit=True),
            sample(100, status_code=404),
            sample(100, status_code=500),
        ])

        assert stats.cache_hit_rate == 33.33
        assert stats.error_rate == 66.67

    def test_average_rounds_half_up(self):
        assert compute_stats([sample(1), sample(2)]).average_response_time == 2

    def test_slowest_endpoints(self):
        stats = compute_stats([
            sample(100, endpoint="/fast"),
            sample(900, endpoint="/slow"),
            sample(700, endpoint="/slow"),
        ])

        assert [e.endpoint for e in stats.slowest_endpoints] == ["/slow", "/fast"]
        assert stats.slowest_endpoints[0].average_time == 800
        assert stats.slowest_endpoints[0].request_count == 2

    def test_request_ids_are_unique(self):
        assert create_request_id() != create_request_id()
        assert create_request_id().startswith("req_")


# =============================================================================
# TIMING TESTS
# =============================================================================

@pytest.mark.asyncio
class TestTiming:
    """Test explicit and context-managed request timing."""

    async def test_end_timing_records_elapsed(self, monitor, metrics_store, timer):
        monitor.start_timing("r1")
        timer.advance(0.25)

        assert await monitor.end_timing("r1", "/api/content", "GET", 200, cache_hit=True)

        [recorded] = metrics_store.find()
        assert recorded.response_time_ms == pytest.approx(250)
        assert recorded.cache_hit is True
        assert monitor.active_requests == 0

    async def test_end_timing_unknown_id(self, monitor, metrics_store):
        assert await monitor.end_timing("never-started", "/x", "GET", 200) is False
        assert metrics_store.find() == []

    async def test_store_failure_is_not_raised(self, cache, timer):
        store = MagicMock()
        store.insert.side_effect = RuntimeError("db down")
        monitor = PerformanceMonitor(cache, store, timer=timer)

        monitor.start_timing("r1")
        assert await monitor.end_timing("r1", "/x", "GET", 200) is False

    async def test_track_request(self, monitor, metrics_store, timer):
        async with monitor.track_request("/api/media", "POST", db_queries=3) as request_id:
            assert monitor.active_requests == 1
            timer.advance(0.1)

        assert request_id.startswith("req_")
        [recorded] = metrics_store.find()
        assert recorded.method == "POST"
        assert recorded.status_code == 200
        assert recorded.db_queries == 3

    async def test_track_request_error(self, monitor, metrics_store):
        with pytest.raises(ValueError):
            async with monitor.track_request("/api/media"):
                raise ValueError("bad input")

        assert metrics_store.find()[0].status_code == 500

    async def test_track_request_cancelled_is_not_a_success(self, monitor, metrics_store):
        """A request cancelled mid-flight is stored as an error, not a 200."""
        entered = asyncio.Event()

        async def handler():
            async with monitor.track_request("/api/slow"):
                entered.set()
                await asyncio.sleep(3600)

        task = asyncio.create_task(handler())
        await entered.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        [recorded] = metrics_store.find()
        assert recorded.endpoint == "/api/slow"
        assert recorded.status_code == CLIENT_CLOSED_REQUEST
        assert recorded.is_error
        assert monitor.active_requests == 0


# =============================================================================
# SSR MONITORING TESTS
# =============================================================================

@pytest.mark.asyncio
class TestSSRMonitoring:
    """Test SSR page monitoring through the cache."""

    async def test_miss_then_hit(self, monitor, metrics_store, cache):
        calls = []

        async def render():
            calls.append(1)
            return "<html>home</html>"

        first = await monitor.monitor_ssr_page("home", render, cache_key="page-render:home")
        second = await monitor.monitor_ssr_page("home", render, cache_key="page-render:home")

        assert first == second == "<html>home</html>"
        assert len(calls) == 1
        assert await cache.get("page-render:home") == "<html>home</html>"

        recorded = metrics_store.find()
        assert sorted(s.cache_hit for s in recorded) == [False, True]
        assert {s.endpoint for s in recorded} == {"/[slug]/home"}

    async def test_skip_cache(self, monitor, cache):
        await cache.set("page-render:home", "stale")
        result = await monitor.monitor_ssr_page(
            "home", lambda: "fresh", cache_key="page-render:home", skip_cache=True
        )
        assert result == "fresh"

    async def test_without_cache_key(self, monitor, metrics_store):
        assert await monitor.monitor_ssr_page("about", lambda: "page") == "page"
        assert metrics_store.find()[0].cache_hit is False

    async def test_loader_error_recorded_and_raised(self, monitor, metrics_store, cache):
        async def render():
            raise RuntimeError("template error")

        with pytest.raises(RuntimeError, match="template error"):
            await monitor.monitor_ssr_page("broken", render, cache_key="page-render:broken")

        assert metrics_store.find()[0].status_code == 500
        assert await cache.get("page-render:broken") is None


# =============================================================================
# WINDOW QUERY TESTS
# =============================================================================

@pytest.mark.asyncio
class TestWindowQueries:
    """Test statistics over stored samples."""

    async def test_performance_stats_window(self, monitor, metrics_store):
        base = datetime(2024, 6, 1, 12, 0, 0)
        metrics_store.insert(sample(100, timestamp=base))
        metrics_store.insert(sample(300, timestamp=base + timedelta(hours=1)))
        metrics_store.insert(sample(900, timestamp=base + timedelta(days=2)))

        stats = await monitor.get_performance_stats(base, base + timedelta(hours=1))

        assert stats.total_requests == 2
        assert stats.average_response_time == 200

    async def test_performance_stats_by_endpoint(self, monitor, metrics_store):
        base = datetime(2024, 6, 1, 12, 0, 0)
        metrics_store.insert(sample(100, endpoint="/a", timestamp=base))
        metrics_store.insert(sample(500, endpoint="/b", timestamp=base))

        stats = await monitor.get_performance_stats(base, base, endpoint="/b")

        assert stats.total_requests == 1
        assert stats.average_response_time == 500

    async def test_performance_stats_store_failure(self, cache):
        store = MagicMock()
        store.find.side_effect = RuntimeError("db down")
        monitor = PerformanceMonitor(cache, store)

        now = datetime(2024, 6, 1)
        assert await monitor.get_performance_stats(now, now) == PerformanceStats()

    async def test_real_time_metrics(self, monitor, metrics_store, wall_clock):
        now = wall_clock()
        metrics_store.insert(sample(100, timestamp=now - timedelta(seconds=30)))
        metrics_store.insert(sample(300, timestamp=now - timedelta(minutes=3)))
        metrics_store.insert(sample(5000, timestamp=now - timedelta(minutes=10)))
        monitor.start_timing("in-flight")

        metrics = await monitor.get_real_time_metrics()

        assert metrics.active_requests == 1
        assert metrics.average_response_time == 200
        assert metrics.requests_per_minute == 1
        assert metrics.cache_hit_rate == 0.0

    async def test_db_query_performance(self, monitor, metrics_store):
        base = datetime(2024, 6, 1, 12, 0, 0)
        metrics_store.insert(sample(100, timestamp=base, db_queries=4, db_query_time_ms=40))
        metrics_store.insert(sample(100, timestamp=base, db_queries=2, db_query_time_ms=150))
        metrics_store.insert(sample(100, timestamp=base))

        perf = await monitor.get_db_query_performance(base, base)

        assert perf.total_queries == 6
        assert perf.average_query_time == 32
        assert perf.slow_queries == 1
        assert perf.queries_per_request == 3.0

    async def test_db_query_performance_empty(self, monitor):
        now = datetime(2024, 6, 1)
        perf = await monitor.get_db_query_performance(now, now)
        assert perf.total_queries == 0

    async def test_cleanup_old_metrics(self, monitor, metrics_store, wall_clock):
        now = wall_clock()
        metrics_store.insert(sample(100, timestamp=now - timedelta(days=40)))
        metrics_store.insert(sample(100, timestamp=now - timedelta(days=5)))

        assert await monitor.cleanup_old_metrics(days_to_keep=30) == 1
        assert len(metrics_store.find()) == 1


# =============================================================================
# ANALYSIS TESTS
# =============================================================================

class TestAnalysis:
    """Test per-request scoring."""

    def test_fast_cached_request_scores_100(self):
        result = analyze_performance(RequestProfile(duration_ms=50, cache_hit=True))
        assert result.score == 100
        assert result.issues == []

    def test_slow_uncached_request(self):
        result = analyze_performance(RequestProfile(duration_ms=1500, cache_hit=False))
        assert result.score == 75
        assert len(result.issues) == 2

    def test_everything_wrong(self):
        result = analyze_performance(RequestProfile(
            duration_ms=4000,
            cache_hit=False,
            db_queries=50,
            render_time_ms=900,
            memory_bytes=200 * 1024 * 1024,
        ))
        assert result.score == 15

    def test_unknown_cache_status_is_not_penalized(self):
        assert analyze_performance(RequestProfile(duration_ms=10)).score == 100

    def test_accepts_samples_and_custom_thresholds(self):
        thresholds = PerformanceThresholds(slow_request_ms=50)
        result = analyze_performance(sample(100, cache_hit=True), thresholds)
        assert result.score == 85

    def test_monitor_uses_its_thresholds(self, cache, metrics_store):
        monitor = PerformanceMonitor(
            cache, metrics_store, thresholds=PerformanceThresholds(max_db_queries=1)
        )
        result = monitor.analyze_performance(RequestProfile(cache_hit=True, db_queries=2))
        assert result.score == 80

    def test_format_metrics(self):
        line = format_metrics(RequestProfile(duration_ms=12.5, cache_hit=True, db_queries=2))
        assert line == "Duration: 12.50ms | Cache: HIT | DB Queries: 2 | Memory: N/A"
