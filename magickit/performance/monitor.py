"""
Performance Monitor

Times requests and SSR renders, persists one sample per request, and
aggregates samples into dashboard statistics.

Samples are written through a synchronous SQLAlchemy store run in a worker
thread. Store failures are logged and never reach the request being timed.
"""

import asyncio
import logging
import math
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

from magickit.cache.config import TTLLike
from magickit.cache.service import CacheService, Loader, call_loader
from magickit.cache.store import MISSING
from magickit.performance.models import (
    DbQueryPerformance,
    EndpointTiming,
    PerformanceAnalysis,
    PerformanceMetricSample,
    PerformanceStats,
    PerformanceThresholds,
    RealTimeMetrics,
    RequestProfile,
)
from magickit.performance.store import SQLAlchemyMetricsStore


logger = logging.getLogger(__name__)

SLOW_DB_QUERY_MS = 100
SLOWEST_ENDPOINTS_LIMIT = 10
# Non-standard status for a request abandoned before it completed
CLIENT_CLOSED_REQUEST = 499


def create_request_id() -> str:
    """Unique id for pairing start_timing / end_timing."""
    return f"req_{int(time.time() * 1000)}_{uuid.uuid4().hex[:9]}"


def _round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def percentile(sorted_values: List[float], fraction: float) -> float:
    """
    Nearest-rank percentile without interpolation.

    Index is floor(n * fraction), clamped to the last element.
    """
    if not sorted_values:
        return 0
    index = min(math.floor(len(sorted_values) * fraction), len(sorted_values) - 1)
    return sorted_values[index]


def compute_stats(samples: List[PerformanceMetricSample]) -> PerformanceStats:
    """Aggregate a window of samples. An empty window gives all zeros."""
    if not samples:
        return PerformanceStats()

    response_times = sorted(s.response_time_ms for s in samples)
    total = len(samples)
    average = sum(response_times) / total

    cache_hits = sum(1 for s in samples if s.cache_hit)
    errors = sum(1 for s in samples if s.is_error)

    endpoint_totals: Dict[str, List[float]] = {}
    for sample in samples:
        endpoint_totals.setdefault(sample.endpoint, []).append(sample.response_time_ms)

    slowest = sorted(
        (
            EndpointTiming(
                endpoint=endpoint,
                average_time=sum(times) / len(times),
                request_count=len(times),
            )
            for endpoint, times in endpoint_totals.items()
        ),
        key=lambda e: e.average_time,
        reverse=True,
    )[:SLOWEST_ENDPOINTS_LIMIT]

    return PerformanceStats(
        average_response_time=int(_round_half_up(average)),
        p95_response_time=int(_round_half_up(percentile(response_times, 0.95))),
        p99_response_time=int(_round_half_up(percentile(response_times, 0.99))),
        cache_hit_rate=_round_half_up(cache_hits / total * 100, 2),
        total_requests=total,
        error_rate=_round_half_up(errors / total * 100, 2),
        slowest_endpoints=slowest,
    )


def analyze_performance(
    profile: Union[RequestProfile, PerformanceMetricSample],
    thresholds: Optional[PerformanceThresholds] = None,
) -> PerformanceAnalysis:
    """Score one request out of 100 and explain the deductions."""
    if isinstance(profile, PerformanceMetricSample):
        profile = RequestProfile.from_sample(profile)
    thresholds = thresholds or PerformanceThresholds()

    issues = []
    recommendations = []
    score = 100

    if profile.duration_ms:
        if profile.duration_ms > thresholds.very_slow_request_ms:
            issues.append(f"Very slow request: {profile.duration_ms:.2f}ms")
            recommendations.append("Consider implementing more aggressive caching")
            recommendations.append("Optimize database queries")
            score -= 30
        elif profile.duration_ms > thresholds.slow_request_ms:
            issues.append(f"Slow request: {profile.duration_ms:.2f}ms")
            recommendations.append("Consider caching this content")
            score -= 15

    if profile.cache_hit is False:
        issues.append("Cache miss - content loaded from database")
        recommendations.append("Ensure proper cache warming for popular content")
        score -= 10

    if profile.db_queries and profile.db_queries > thresholds.max_db_queries:
        issues.append(f"High database query count: {profile.db_queries}")
        recommendations.append("Optimize database queries and use aggregation")
        recommendations.append("Consider denormalizing frequently accessed data")
        score -= 20

    if profile.memory_bytes and profile.memory_bytes > thresholds.high_memory_bytes:
        issues.append(f"High memory usage: {profile.memory_bytes / 1024 / 1024:.2f}MB")
        recommendations.append("Monitor for memory leaks")
        recommendations.append("Consider reducing payload size")
        score -= 15

    if profile.render_time_ms and profile.render_time_ms > thresholds.slow_render_ms:
        issues.append(f"Slow render time: {profile.render_time_ms:.2f}ms")
        recommendations.append("Optimize component rendering")
        recommendations.append("Consider server-side caching of rendered content")
        score -= 10

    return PerformanceAnalysis(
        score=max(0, score),
        issues=issues,
        recommendations=recommendations,
    )


def format_metrics(profile: RequestProfile) -> str:
    """One-line summary for logs."""
    duration = f"{profile.duration_ms:.2f}ms" if profile.duration_ms is not None else "N/A"
    memory = (
        f"{profile.memory_bytes / 1024 / 1024:.2f}MB"
        if profile.memory_bytes is not None else "N/A"
    )
    parts = [
        f"Duration: {duration}",
        f"Cache: {'HIT' if profile.cache_hit else 'MISS'}",
        f"DB Queries: {profile.db_queries or 0}",
        f"Memory: {memory}",
    ]
    if profile.render_time_ms:
        parts.append(f"Render: {profile.render_time_ms:.2f}ms")
    return " | ".join(parts)


class PerformanceMonitor:
    """
    Request timing and performance statistics.

    Usage:
        monitor = PerformanceMonitor(cache, store)

        page = await monitor.monitor_ssr_page(
            slug, render, cache_key=keys.page_render(slug)
        )

        async with monitor.track_request("/api/content", "GET"):
            ...
    """

    def __init__(
        self,
        cache: CacheService,
        store: SQLAlchemyMetricsStore,
        thresholds: Optional[PerformanceThresholds] = None,
        timer: Callable[[], float] = time.perf_counter,
        now: Callable[[], datetime] = datetime.utcnow,
    ):
        self._cache = cache
        self._store = store
        self.thresholds = thresholds or PerformanceThresholds()
        self._timer = timer
        self._now = now
        self._request_times: Dict[str, float] = {}

    def _elapsed_ms(self, start: float) -> float:
        return (self._timer() - start) * 1000

    async def _record(self, sample: PerformanceMetricSample) -> bool:
        try:
            await asyncio.to_thread(self._store.insert, sample)
            return True
        except Exception as e:
            logger.error(f"Error recording performance metric for {sample.endpoint}: {e}")
            return False

    # =========================================================================
    # Request timing
    # =========================================================================

    def start_timing(self, request_id: str):
        self._request_times[request_id] = self._timer()

    async def end_timing(
        self,
        request_id: str,
        endpoint: str,
        method: str,
        status_code: int,
        cache_hit: bool = False,
        user_agent: Optional[str] = None,
        ip: Optional[str] = None,
        content_length: Optional[int] = None,
        db_queries: Optional[int] = None,
        db_query_time_ms: Optional[float] = None,
    ) -> bool:
        """
        Finish timing a request and persist its sample.

        Returns False when request_id was never started (nothing is
        recorded) or the sample could not be stored.
        """
        start = self._request_times.pop(request_id, None)
        if start is None:
            logger.debug(f"end_timing called for unknown request {request_id}")
            return False

        sample = PerformanceMetricSample(
            endpoint=endpoint,
            method=method,
            response_time_ms=self._elapsed_ms(start),
            status_code=status_code,
            cache_hit=cache_hit,
            timestamp=self._now(),
            user_agent=user_agent,
            ip=ip,
            content_length=content_length,
            db_queries=db_queries,
            db_query_time_ms=db_query_time_ms,
        )
        return await self._record(sample)

    @asynccontextmanager
    async def track_request(
        self,
        endpoint: str,
        method: str = "GET",
        request_id: Optional[str] = None,
        **options: Any,
    ) -> AsyncIterator[str]:
        """Time the enclosed block; status 500 if it raises, 499 if cancelled."""
        request_id = request_id or create_request_id()
        self.start_timing(request_id)
        status_code = 200
        try:
            yield request_id
        except asyncio.CancelledError:
            status_code = CLIENT_CLOSED_REQUEST
            raise
        except Exception:
            status_code = 500
            raise
        finally:
            await self.end_timing(request_id, endpoint, method, status_code, **options)

    @property
    def active_requests(self) -> int:
        return len(self._request_times)

    # =========================================================================
    # SSR pages
    # =========================================================================

    async def monitor_ssr_page(
        self,
        slug: str,
        loader: Loader,
        cache_key: Optional[str] = None,
        cache_ttl: Optional[TTLLike] = None,
        skip_cache: bool = False,
    ) -> Any:
        """
        Render a page through the cache and record how long it took.

        Loader errors are recorded with status 500 and re-raised.
        """
        start = self._timer()
        cache_hit = False

        try:
            if cache_key and not skip_cache:
                cached = await self._cache.get(cache_key, MISSING)
                if cached is not MISSING:
                    cache_hit = True
                    result = cached
                else:
                    result = await call_loader(loader)
                    await self._cache.set(cache_key, result, cache_ttl)
            else:
                result = await call_loader(loader)
        except Exception:
            await self._record_ssr(slug, self._elapsed_ms(start), cache_hit, status_code=500)
            raise

        await self._record_ssr(slug, self._elapsed_ms(start), cache_hit)
        return result

    async def _record_ssr(
        self,
        slug: str,
        response_time_ms: float,
        cache_hit: bool,
        status_code: int = 200,
    ):
        await self._record(PerformanceMetricSample(
            endpoint=f"/[slug]/{slug}",
            method="GET",
            response_time_ms=response_time_ms,
            status_code=status_code,
            cache_hit=cache_hit,
            timestamp=self._now(),
        ))

    # =========================================================================
    # Statistics
    # =========================================================================

    async def get_performance_stats(
        self,
        start: datetime,
        end: datetime,
        endpoint: Optional[str] = None,
    ) -> PerformanceStats:
        try:
            samples = await asyncio.to_thread(self._store.find, start, end, endpoint)
        except Exception as e:
            logger.error(f"Error getting performance stats: {e}")
            return PerformanceStats()

        return compute_stats(samples)

    async def get_real_time_metrics(self) -> RealTimeMetrics:
        """In-flight requests, last-5-minute mean, last-minute count, cache hit rate."""
        now = self._now()
        one_minute_ago = now - timedelta(minutes=1)
        five_minutes_ago = now - timedelta(minutes=5)

        try:
            recent = await asyncio.to_thread(self._store.find, five_minutes_ago)
        except Exception as e:
            logger.error(f"Error getting real-time metrics: {e}")
            return RealTimeMetrics()

        last_minute = [s for s in recent if s.timestamp >= one_minute_ago]
        average = (
            sum(s.response_time_ms for s in recent) / len(recent)
            if recent else 0
        )

        return RealTimeMetrics(
            active_requests=self.active_requests,
            average_response_time=int(_round_half_up(average)),
            requests_per_minute=len(last_minute),
            cache_hit_rate=self._cache.get_hit_miss_stats()["hit_rate"],
        )

    async def get_db_query_performance(
        self,
        start: datetime,
        end: datetime,
    ) -> DbQueryPerformance:
        try:
            samples = await asyncio.to_thread(
                self._store.find, start, end, None, True
            )
        except Exception as e:
            logger.error(f"Error getting DB query performance: {e}")
            return DbQueryPerformance()

        if not samples:
            return DbQueryPerformance()

        total_query_time = sum(s.db_query_time_ms or 0 for s in samples)
        total_queries = sum(s.db_queries or 0 for s in samples)
        slow_queries = sum(1 for s in samples if (s.db_query_time_ms or 0) > SLOW_DB_QUERY_MS)

        return DbQueryPerformance(
            average_query_time=(
                int(_round_half_up(total_query_time / total_queries))
                if total_queries > 0 else 0
            ),
            total_queries=total_queries,
            slow_queries=slow_queries,
            queries_per_request=_round_half_up(total_queries / len(samples), 2),
        )

    async def cleanup_old_metrics(self, days_to_keep: int = 30) -> int:
        """Delete samples older than days_to_keep. Returns rows removed."""
        cutoff = self._now() - timedelta(days=days_to_keep)
        try:
            deleted = await asyncio.to_thread(self._store.delete_before, cutoff)
        except Exception as e:
            logger.error(f"Error cleaning up old metrics: {e}")
            return 0

        logger.info(f"Cleaned up {deleted} old performance metrics")
        return deleted

    def analyze_performance(
        self,
        profile: Union[RequestProfile, PerformanceMetricSample],
    ) -> PerformanceAnalysis:
        return analyze_performance(profile, self.thresholds)
