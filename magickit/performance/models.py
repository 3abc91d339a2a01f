"""
Performance Data Models

Samples are immutable once recorded; every other type here is derived from
a window of samples on demand.
"""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class PerformanceMetricSample:
    """One timed request or SSR render."""
    endpoint: str
    method: str
    response_time_ms: float
    status_code: int
    cache_hit: bool = False
    timestamp: datetime = field(default_factory=datetime.utcnow)
    user_agent: Optional[str] = None
    ip: Optional[str] = None
    content_length: Optional[int] = None
    db_queries: Optional[int] = None
    db_query_time_ms: Optional[float] = None

    @property
    def is_error(self) -> bool:
        return self.status_code >= 400


@dataclass
class EndpointTiming:
    endpoint: str
    average_time: float
    request_count: int


@dataclass
class PerformanceStats:
    """Aggregates over a time window. Times in ms, rates in percent."""
    average_response_time: int = 0
    p95_response_time: int = 0
    p99_response_time: int = 0
    cache_hit_rate: float = 0.0
    total_requests: int = 0
    error_rate: float = 0.0
    slowest_endpoints: List[EndpointTiming] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RealTimeMetrics:
    active_requests: int = 0
    average_response_time: int = 0
    requests_per_minute: int = 0
    cache_hit_rate: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class DbQueryPerformance:
    """Database work across samples that reported query timings."""
    average_query_time: int = 0
    total_queries: int = 0
    slow_queries: int = 0
    queries_per_request: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# =============================================================================
# Request analysis
# =============================================================================

@dataclass(frozen=True)
class PerformanceThresholds:
    """Limits used when scoring a single request."""
    slow_request_ms: float = 1000
    very_slow_request_ms: float = 3000
    slow_render_ms: float = 500
    high_memory_bytes: int = 100 * 1024 * 1024
    max_db_queries: int = 10


@dataclass
class RequestProfile:
    """What was observed while serving one request."""
    duration_ms: Optional[float] = None
    cache_hit: Optional[bool] = None
    db_queries: Optional[int] = None
    render_time_ms: Optional[float] = None
    memory_bytes: Optional[int] = None

    @classmethod
    def from_sample(cls, sample: PerformanceMetricSample) -> "RequestProfile":
        return cls(
            duration_ms=sample.response_time_ms,
            cache_hit=sample.cache_hit,
            db_queries=sample.db_queries,
        )


@dataclass
class PerformanceAnalysis:
    score: int
    issues: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
