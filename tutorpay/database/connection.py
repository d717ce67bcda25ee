"""Database connection and session management."""
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any, Dict

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tutorpay.config import Settings
from tutorpay.database.models import Base

logger = structlog.get_logger(__name__)


def _engine_options(settings: Settings) -> Dict[str, Any]:
    """Pool options only apply to pooled (non-SQLite) drivers."""
    options: Dict[str, Any] = {"echo": settings.database_echo}
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            pool_pre_ping=True,  # Verify connections before using
            pool_recycle=3600,  # Recycle connections after 1 hour
        )
    return options


class Database:
    """
    Owns the async engine and session factory.

    Constructed once by the process entry point and handed to the
    services that need it; there is no module-level engine.
    """

    def __init__(self, settings: Settings, engine: AsyncEngine | None = None):
        """
        Initialize database handle.

        Args:
            settings: Application settings
            engine: Optional pre-built engine (tests)
        """
        self.engine = engine or create_async_engine(
            settings.database_url, **_engine_options(settings)
        )
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, Any]:
        """
        Open a session that commits on success and rolls back on error.

        Example:
            async with database.session() as session:
                ...
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """
        Initialize database tables.

        Creates all tables defined in models if they don't exist.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_ensured")

    async def dispose(self) -> None:
        """Close database connections and dispose of the engine."""
        await self.engine.dispose()
