"""
MagicKit Database Layer

Usage:
    from magickit.database import create_db_engine, get_session_factory, init_db

    engine = create_db_engine()
    init_db(engine)
    session_factory = get_session_factory(engine)
"""

from .models import Base, PerformanceMetricRecord
from .session import (
    check_db_connection,
    create_db_engine,
    get_database_url,
    get_db_context,
    get_session_factory,
    init_db,
)

__all__ = [
    "Base",
    "PerformanceMetricRecord",
    "check_db_connection",
    "create_db_engine",
    "get_database_url",
    "get_db_context",
    "get_session_factory",
    "init_db",
]
