"""
Database clients for Issue Sync.

A DatabaseClient wraps one SQLAlchemy engine (a full connection pool) and its
session factory. The default client serves single-tenant mode; the tenant router
creates one client per tenant database URL.
"""

import logging
from contextlib import contextmanager
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from issue_sync.core.config import get_settings

logger = logging.getLogger(__name__)


class DatabaseClient:
    """Engine + session factory bound to one database URL."""

    def __init__(self, database_url: str, engine: Optional[Engine] = None):
        self.database_url = database_url
        self.engine = engine if engine is not None else self._create_engine(database_url)
        self.SessionLocal = sessionmaker(bind=self.engine, expire_on_commit=False)
        self.connected = True

    @staticmethod
    def _create_engine(database_url: str) -> Engine:
        settings = get_settings()

        if database_url.startswith("sqlite"):
            return create_engine(database_url, connect_args={"check_same_thread": False})

        return create_engine(
            database_url,
            poolclass=QueuePool,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            pool_timeout=settings.DB_POOL_TIMEOUT,
            pool_recycle=settings.DB_POOL_RECYCLE,
            echo=settings.DEBUG,
            pool_pre_ping=True
        )

    def get_session(self) -> Session:
        return self.SessionLocal()

    @contextmanager
    def session_context(self):
        """Context manager for a unit of work: commit on success, rollback on error."""
        session = self.get_session()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def disconnect(self):
        """Disposes the connection pool."""
        if self.connected:
            self.engine.dispose()
            self.connected = False
            logger.info("Database client disconnected")


_default_client: Optional[DatabaseClient] = None


def get_default_client() -> DatabaseClient:
    """Returns the process-wide single-tenant client (DATABASE_URL)."""
    global _default_client
    if _default_client is None:
        _default_client = DatabaseClient(get_settings().DATABASE_URL)
        logger.info("✅ Default database client initialized")
    return _default_client
