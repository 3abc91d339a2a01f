"""
MagicKit Performance Monitoring

- PerformanceMonitor: request/SSR timing and aggregate statistics
- SQLAlchemyMetricsStore: persisted performance samples
- analyze_performance: per-request score with recommendations
"""

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
from magickit.performance.monitor import (
    PerformanceMonitor,
    analyze_performance,
    compute_stats,
    create_request_id,
    format_metrics,
    percentile,
)
from magickit.performance.store import SQLAlchemyMetricsStore

__all__ = [
    "PerformanceMonitor",
    "SQLAlchemyMetricsStore",
    "PerformanceMetricSample",
    "PerformanceStats",
    "EndpointTiming",
    "RealTimeMetrics",
    "DbQueryPerformance",
    "PerformanceThresholds",
    "RequestProfile",
    "PerformanceAnalysis",
    "analyze_performance",
    "compute_stats",
    "create_request_id",
    "format_metrics",
    "percentile",
]
