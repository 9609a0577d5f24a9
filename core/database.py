"""
Database engine and session management shared by the web app and workers
"""

import logging
import time
from typing import Any, Dict

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool

from core.database_models import Base

logger = logging.getLogger(__name__)


def create_db_engine(database_url: str, pool_size: int = 10, max_overflow: int = 20,
                     slow_query_threshold: float = 1.0, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine with pooling suited to the backend

    In-memory SQLite shares a single connection so every session sees the
    same database.
    """
    engine_options: Dict[str, Any] = {'echo': echo}

    if database_url in ('sqlite://', 'sqlite:///:memory:'):
        engine_options.update({
            'poolclass': StaticPool,
            'connect_args': {'check_same_thread': False},
        })
    elif database_url.startswith('sqlite'):
        engine_options['connect_args'] = {'check_same_thread': False, 'timeout': 20}
    else:
        engine_options.update({
            'poolclass': QueuePool,
            'pool_size': pool_size,
            'max_overflow': max_overflow,
            'pool_pre_ping': True,  # Verify connections before use
            'pool_recycle': 3600,
        })
        if 'postgresql' in database_url:
            engine_options['connect_args'] = {
                'options': '-c default_transaction_isolation=read_committed',
                'application_name': 'newsletter_pipeline',
                'connect_timeout': 10,
            }

    engine = create_engine(database_url, **engine_options)

    @event.listens_for(engine, "before_cursor_execute")
    def receive_before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        context._query_start_time = time.monotonic()

    @event.listens_for(engine, "after_cursor_execute")
    def receive_after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        total = time.monotonic() - context._query_start_time
        if total > slow_query_threshold:
            logger.warning(f"Slow query ({total:.2f}s): {statement[:100]}...")

    if database_url.startswith('sqlite'):
        @event.listens_for(engine, "connect")
        def enable_sqlite_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    logger.info(f"Database configured: {database_url.split('@')[-1] if '@' in database_url else database_url}")
    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


def init_schema(engine: Engine) -> None:
    """Create any missing tables"""
    Base.metadata.create_all(engine)

