"""
Database session management and initialization.
Provides async database sessions with connection pooling.
"""

from typing import AsyncGenerator, Optional
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from contextlib import asynccontextmanager
import logging

from scheduled_messaging.core.config import settings
from scheduled_messaging.models.database import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Manages database connections and sessions."""

    def __init__(self):
        """Initialize database manager."""
        self.engine = None
        self.async_session_factory = None

    def init_db(self, database_url: Optional[str] = None):
        """Initialize database engine and session factory."""
        url = str(database_url or settings.database_url)

        engine_kwargs = {
            "echo": settings.debug,
        }

        # Pool parameters are not accepted by the SQLite dialect
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"timeout": 30}
        else:
            engine_kwargs.update({
                "pool_size": settings.db_pool_size,
                "max_overflow": settings.db_max_overflow,
                "pool_timeout": settings.db_pool_timeout,
                "pool_pre_ping": True,
                "pool_recycle": 3600,
            })

        self.engine = create_async_engine(url, **engine_kwargs)

        self.async_session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
            autocommit=False,
        )

        logger.info("Database engine initialized successfully")

    async def create_tables(self):
        """Create all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created successfully")

    async def drop_tables(self):
        """Drop all database tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            logger.info("Database tables dropped successfully")

    @asynccontextmanager
    async def session_context(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Context manager for a single-transaction database session.

        Commits on success, rolls back on any exception.
        """
        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    async def health_check(self) -> bool:
        """
        Check database health.

        Returns:
            bool: True if database is healthy
        """
        try:
            async with self.engine.begin() as conn:
                result = await conn.execute(text("SELECT 1"))
                return result.scalar() == 1
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False


# Global database manager instance
db_manager = DatabaseManager()


async def init_database():
    """Initialize database on application startup."""
    db_manager.init_db()
    await db_manager.create_tables()
    logger.info("Database initialized successfully")


async def close_database():
    """Close database connections on application shutdown."""
    await db_manager.close()
