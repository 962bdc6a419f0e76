"""
Database configuration and session management
"""

from typing import AsyncGenerator, Optional
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    async_sessionmaker,
    create_async_engine
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool, AsyncAdaptedQueuePool
import logging
from contextlib import asynccontextmanager

from boxoffice.config import settings

logger = logging.getLogger(__name__)


def create_engine_from_settings(database_url: Optional[str] = None) -> AsyncEngine:
    """
    Build the async engine; SQLite and test runs get a connection per session
    """
    url = database_url or settings.DATABASE_URL
    if settings.is_testing or url.startswith("sqlite"):
        # NullPool doesn't accept pool parameters
        return create_async_engine(
            url,
            echo=settings.DB_ECHO,
            poolclass=NullPool,
            connect_args={"timeout": 30} if url.startswith("sqlite") else {},
        )
    return create_async_engine(
        url,
        echo=settings.DB_ECHO,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
        poolclass=AsyncAdaptedQueuePool,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Create async engine
engine: AsyncEngine = create_engine_from_settings()

# Create async session factory
async_session = create_session_factory(engine)

# Create declarative base
Base = declarative_base()


async def init_db(bind: Optional[AsyncEngine] = None):
    """
    Initialize database schema
    """
    target = bind or engine
    try:
        async with target.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def close_db(bind: Optional[AsyncEngine] = None):
    """
    Close database connections
    """
    await (bind or engine).dispose()
    logger.info("Database connections closed")


class DatabaseManager:
    """
    Transaction boundaries for services and workers
    """

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory or async_session
        self.logger = logging.getLogger(__name__)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Plain session for reads; no transaction is committed on exit
        """
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self, session: AsyncSession):
        """
        Context manager for explicit transaction handling
        Uses SQLAlchemy's built-in begin() context manager for proper cleanup
        """
        try:
            async with session.begin():
                yield session
                # Transaction auto-commits on successful exit
        except Exception as e:
            # Transaction auto-rolls back on exception
            self.logger.debug(f"Transaction rolled back: {type(e).__name__}: {e}")
            raise

    @asynccontextmanager
    async def atomic_transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Create a new session with atomic transaction
        """
        async with self.session_factory() as session:
            async with self.transaction(session) as tx_session:
                yield tx_session


# Create global database manager
db_manager = DatabaseManager()
