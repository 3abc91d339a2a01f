"""
SQLAlchemy Models for MagicKit

Only performance samples are persisted here. Rows are inserted, queried by
time range and pruned by age; they are never updated.
"""

from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, Float, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PerformanceMetricRecord(Base):
    """One timed request or SSR render."""
    __tablename__ = "performance_metrics"

    id = Column(Integer, primary_key=True, autoincrement=True)

    endpoint = Column(String(500), nullable=False)
    method = Column(String(10), nullable=False)
    status_code = Column(Integer, nullable=False)

    # Timing
    response_time_ms = Column(Float, nullable=False)
    cache_hit = Column(Boolean, default=False, nullable=False)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)

    # Request context
    user_agent = Column(Text)
    ip = Column(String(64))
    content_length = Column(Integer)

    # Database work done while serving
    db_queries = Column(Integer)
    db_query_time_ms = Column(Float)

    __table_args__ = (
        Index("idx_perf_timestamp", "timestamp"),
        Index("idx_perf_endpoint_time", "endpoint", "timestamp"),
    )

    def __repr__(self):
        return (
            f"<PerformanceMetricRecord {self.method} {self.endpoint} "
            f"{self.response_time_ms:.1f}ms>"
        )
