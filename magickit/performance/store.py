"""
Performance Sample Store

Append-only persistence for performance samples over SQLAlchemy. Samples
are inserted, read back by time range, and pruned by age.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import sessionmaker

from magickit.database.models import PerformanceMetricRecord
from magickit.database.session import get_db_context
from magickit.performance.models import PerformanceMetricSample


logger = logging.getLogger(__name__)


def _to_record(sample: PerformanceMetricSample) -> PerformanceMetricRecord:
    return PerformanceMetricRecord(
        endpoint=sample.endpoint,
        method=sample.method,
        status_code=sample.status_code,
        response_time_ms=sample.response_time_ms,
        cache_hit=sample.cache_hit,
        timestamp=sample.timestamp,
        user_agent=sample.user_agent,
        ip=sample.ip,
        content_length=sample.content_length,
        db_queries=sample.db_queries,
        db_query_time_ms=sample.db_query_time_ms,
    )


def _to_sample(record: PerformanceMetricRecord) -> PerformanceMetricSample:
    return PerformanceMetricSample(
        endpoint=record.endpoint,
        method=record.method,
        response_time_ms=record.response_time_ms,
        status_code=record.status_code,
        cache_hit=bool(record.cache_hit),
        timestamp=record.timestamp,
        user_agent=record.user_agent,
        ip=record.ip,
        content_length=record.content_length,
        db_queries=record.db_queries,
        db_query_time_ms=record.db_query_time_ms,
    )


class SQLAlchemyMetricsStore:
    """
    Metrics store backed by the performance_metrics table.

    Methods are synchronous and raise on database errors; the monitor runs
    them off the event loop and decides how failures are reported.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def insert(self, sample: PerformanceMetricSample) -> None:
        with get_db_context(self._session_factory) as db:
            db.add(_to_record(sample))

    def find(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        endpoint: Optional[str] = None,
        with_db_query_time: bool = False,
    ) -> List[PerformanceMetricSample]:
        """Samples with start <= timestamp <= end, newest first."""
        with get_db_context(self._session_factory) as db:
            query = db.query(PerformanceMetricRecord)

            if start is not None:
                query = query.filter(PerformanceMetricRecord.timestamp >= start)
            if end is not None:
                query = query.filter(PerformanceMetricRecord.timestamp <= end)
            if endpoint:
                query = query.filter(PerformanceMetricRecord.endpoint == endpoint)
            if with_db_query_time:
                query = query.filter(PerformanceMetricRecord.db_query_time_ms.isnot(None))

            records = query.order_by(PerformanceMetricRecord.timestamp.desc()).all()
            return [_to_sample(r) for r in records]

    def delete_before(self, cutoff: datetime) -> int:
        """Delete samples older than cutoff. Returns rows removed."""
        with get_db_context(self._session_factory) as db:
            return (
                db.query(PerformanceMetricRecord)
                .filter(PerformanceMetricRecord.timestamp < cutoff)
                .delete(synchronize_session=False)
            )
