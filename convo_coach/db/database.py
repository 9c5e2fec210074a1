"""
Database connection and session management.
Provides async SQLAlchemy engine and session factory.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    AsyncEngine,
    async_sessionmaker,
)

from convo_coach.config import settings
from convo_coach.db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Database connection manager.
    Handles engine creation, session management, and connection pooling.
    """

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        """
        Initialize database connection.

        Args:
            database_url: Override for settings.database_url
            echo: Log SQL statements (defaults to on in development)
        """
        self.database_url = database_url or settings.database_url
        self.echo = settings.is_development if echo is None else echo
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None

    def init_engine(self) -> AsyncEngine:
        """
        Create async SQLAlchemy engine with connection pooling.

        Returns:
            Configured async engine
        """
        if self.engine is not None:
            return self.engine

        logger.info("Initializing database connection...")

        self.engine = create_async_engine(
            self.database_url,
            echo=self.echo,
            pool_pre_ping=True,  # Validate connections before use
            pool_recycle=3600,  # Recycle connections after 1 hour
        )

        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        logger.info("Database engine initialized successfully")
        return self.engine

    async def create_tables(self):
        """
        Create all database tables.
        Use only for development and testing.
        """
        if self.engine is None:
            self.init_engine()

        logger.info("Creating database tables...")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session.
        Use as context manager to ensure proper cleanup.

        Example:
            async with db.get_session() as session:
                result = await session.execute(query)

        Yields:
            Async database session
        """
        if self.session_factory is None:
            self.init_engine()

        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}", exc_info=True)
            raise
        finally:
            await session.close()

    async def close(self):
        """Close database engine and cleanup connections."""
        if self.engine is not None:
            logger.info("Closing database connections...")
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            logger.info("Database connections closed")
