"""
Database Connection Management for the Minutebook Entity Management System

This module provides:
- FastAPI Dependency Injection pattern for database sessions
- A transaction() helper for explicit transaction boundaries (a mutation
  and its audit entry commit or roll back together)
- Connection pooling with proper configuration
- Health checks and connection validation with retry logic
- Environment-based configuration

Uses SQLAlchemy 2.0 style with proper typing support.
"""

import os
import logging
from typing import Generator, Optional, Callable
from contextlib import contextmanager
from functools import lru_cache
from dataclasses import dataclass

from sqlalchemy import create_engine, event, text, Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
    before_sleep_log
)

from database.models import Base

logger = logging.getLogger(__name__)


# ============================================
# CONFIGURATION
# ============================================

@dataclass
class DatabaseSettings:
    """Database configuration settings."""
    host: str = "localhost"
    port: int = 5432
    database: str = "minutebook"
    user: str = "minutebook"
    password: str = "minutebook"
    pool_size: int = 5
    max_overflow: int = 10
    pool_timeout: int = 30
    pool_recycle: int = 1800
    echo: bool = False

    @classmethod
    def from_env(cls) -> 'DatabaseSettings':
        """Create settings from environment variables."""
        return cls(
            host=os.getenv("DB_HOST", "localhost"),
            port=int(os.getenv("DB_PORT", "5432")),
            database=os.getenv("DB_NAME", "minutebook"),
            user=os.getenv("DB_USER", "minutebook"),
            password=os.getenv("DB_PASSWORD", "minutebook"),
            pool_size=int(os.getenv("DB_POOL_SIZE", "5")),
            max_overflow=int(os.getenv("DB_MAX_OVERFLOW", "10")),
            pool_timeout=int(os.getenv("DB_POOL_TIMEOUT", "30")),
            pool_recycle=int(os.getenv("DB_POOL_RECYCLE", "1800")),
            echo=os.getenv("DB_ECHO", "false").lower() == "true"
        )

    def get_url(self) -> str:
        """Build database URL."""
        # Check for full URL first
        full_url = os.getenv("DATABASE_URL")
        if full_url:
            return full_url
        return f"postgresql+psycopg2://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


@lru_cache()
def get_settings() -> DatabaseSettings:
    """Get cached database settings."""
    return DatabaseSettings.from_env()


def get_pool_settings() -> dict:
    """
    Get connection pool settings from environment.

    Returns:
        Dictionary of pool settings
    """
    settings = get_settings()
    return {
        "pool_size": settings.pool_size,
        "max_overflow": settings.max_overflow,
        "pool_timeout": settings.pool_timeout,
        "pool_recycle": settings.pool_recycle,
        "pool_pre_ping": True,
    }


# ============================================
# RETRY LOGIC
# ============================================

def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 1,
    max_wait: float = 10
) -> Callable:
    """
    Create a retry decorator for transient database failures.

    Only OperationalError (connection refused, dropped connection) is
    retried. Business errors and integrity violations propagate at once.

    Args:
        max_attempts: Maximum number of retry attempts
        min_wait: Minimum wait time between retries (seconds)
        max_wait: Maximum wait time between retries (seconds)
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        retry=retry_if_exception_type(OperationalError),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


# Create default retry decorator
db_retry = create_retry_decorator()


# ============================================
# TRANSACTION BOUNDARIES
# ============================================

@contextmanager
def transaction(session: Session) -> Generator[Session, None, None]:
    """
    Commit everything done in the block, or roll all of it back.

    Every mutating service call runs inside one of these so that the
    primary write and its audit row share a single commit.

    Usage:
        with transaction(session):
            org = org_repo.create(...)
            audit.record(org.id, actor_id, AuditAction.CREATE_ORG, payload)
    """
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


# ============================================
# DATABASE SESSION PROVIDER (FastAPI DI)
# ============================================

class DatabaseSessionProvider:
    """
    Provides database sessions using FastAPI Dependency Injection pattern.

    Usage:
        # Create provider (typically in app startup)
        db_provider = DatabaseSessionProvider()

        # Use in FastAPI endpoint
        @app.get("/organizations")
        def list_orgs(db: Session = Depends(db_provider.get_session)):
            ...
    """

    def __init__(
        self,
        settings: Optional[DatabaseSettings] = None,
        engine: Optional[Engine] = None
    ):
        """
        Initialize the database session provider.

        Args:
            settings: Database settings (uses env if not provided)
            engine: Pre-created engine (for testing)
        """
        self._settings = settings or get_settings()
        self._engine = engine
        self._session_factory: Optional[sessionmaker] = None
        self._initialized = False

    def init(self, echo: Optional[bool] = None) -> None:
        """
        Initialize database engine and session factory.

        Args:
            echo: Override echo setting for SQL logging
        """
        if self._initialized:
            return

        if echo is not None:
            self._settings.echo = echo

        if self._engine is None:
            self._engine = self._create_engine_with_retry()

        self._session_factory = sessionmaker(
            bind=self._engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False
        )

        self._setup_event_listeners()

        self._initialized = True
        logger.info("Database session provider initialized")

    @db_retry
    def _create_engine_with_retry(self) -> Engine:
        """Create database engine with retry logic."""
        url = self._settings.get_url()

        if url.startswith("sqlite"):
            engine = create_engine(url, echo=self._settings.echo)
        else:
            engine = create_engine(
                url,
                echo=self._settings.echo,
                poolclass=QueuePool,
                **get_pool_settings()
            )

        # Verify connection
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))

        return engine

    def _setup_event_listeners(self) -> None:
        """Set up SQLAlchemy event listeners for logging and debugging."""

        @event.listens_for(self._engine, "connect")
        def on_connect(dbapi_connection, connection_record):
            logger.debug("New database connection established")

        @event.listens_for(self._engine, "checkout")
        def on_checkout(dbapi_connection, connection_record, connection_proxy):
            logger.debug("Connection checked out from pool")

        @event.listens_for(self._engine, "checkin")
        def on_checkin(dbapi_connection, connection_record):
            logger.debug("Connection returned to pool")

    @property
    def engine(self) -> Engine:
        """Get the SQLAlchemy engine."""
        if self._engine is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get the session factory."""
        if self._session_factory is None:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory

    def get_session(self) -> Generator[Session, None, None]:
        """
        FastAPI dependency for getting a database session.

        Services open their own transaction() blocks; the session is
        simply closed when the request ends.
        """
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
        finally:
            session.close()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for session with auto-commit/rollback.

        Usage:
            with db_provider.session_scope() as session:
                session.add(template)
                # Auto-commits on exit, rollbacks on exception
        """
        if self._session_factory is None:
            self.init()

        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_tables(self) -> None:
        """Create all database tables."""
        if self._engine is None:
            self.init()
        Base.metadata.create_all(self._engine)
        logger.info("Database tables created")

    def drop_tables(self) -> None:
        """Drop all database tables. USE WITH CAUTION!"""
        if self._engine is None:
            self.init()
        Base.metadata.drop_all(self._engine)
        logger.warning("Database tables dropped")

    def health_check(self) -> bool:
        """
        Check if database connection is healthy.

        Returns:
            True if connection is healthy, False otherwise
        """
        try:
            self._ping()
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False

    @db_retry
    def _ping(self) -> None:
        with self.session_scope() as session:
            session.execute(text("SELECT 1"))

    def close(self) -> None:
        """Close database connections and clean up."""
        if self._engine:
            self._engine.dispose()
            logger.info("Database engine disposed")
        self._initialized = False


# ============================================
# GLOBAL PROVIDER INSTANCE
# ============================================

_db_provider: Optional[DatabaseSessionProvider] = None


def get_db_provider() -> DatabaseSessionProvider:
    """Get the global database provider instance."""
    global _db_provider
    if _db_provider is None:
        _db_provider = DatabaseSessionProvider()
    return _db_provider


def init_db(echo: bool = False) -> DatabaseSessionProvider:
    """
    Initialize the global database provider.

    Call this during application startup.
    """
    provider = get_db_provider()
    provider.init(echo=echo)
    return provider


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency for getting a database session.

    Usage in FastAPI:
        @app.get("/organizations")
        def list_orgs(db: Session = Depends(get_db)):
            ...
    """
    provider = get_db_provider()
    if not provider._initialized:
        provider.init()

    yield from provider.get_session()


def close_db() -> None:
    """
    Close the global database provider.

    Call this during application shutdown.
    """
    global _db_provider
    if _db_provider:
        _db_provider.close()
        _db_provider = None


# ============================================
# PYTEST FIXTURES SUPPORT
# ============================================

def create_test_provider(
    engine: Optional[Engine] = None,
    settings: Optional[DatabaseSettings] = None
) -> DatabaseSessionProvider:
    """
    Create a database provider for testing.

    Args:
        engine: Pre-created engine (e.g., SQLite for unit tests)
        settings: Custom settings for testing
    """
    return DatabaseSessionProvider(settings=settings, engine=engine)
