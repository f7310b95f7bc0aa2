"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import Table, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)

from .config import settings, DatabaseConfig
from .exceptions import DatabaseError
from .logging import get_logger

logger = get_logger(__name__)

# Global engine and session maker
async_engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None


async def init_database(database_url: Optional[str] = None) -> None:
    """Initialize database connections and session makers."""
    global async_engine, async_session_maker

    logger.info("Initializing database connections")

    async_engine = create_async_engine(
        DatabaseConfig.get_database_url(async_driver=True, url=database_url),
        **DatabaseConfig.get_engine_config(url=database_url),
        echo=settings.debug
    )

    async_session_maker = async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    logger.info("Database connections initialized", dialect=async_engine.dialect.name)


async def close_database() -> None:
    """Close database connections."""
    global async_engine, async_session_maker

    logger.info("Closing database connections")

    if async_engine:
        await async_engine.dispose()

    async_engine = None
    async_session_maker = None

    logger.info("Database connections closed")


@asynccontextmanager
async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Get an async database session with automatic commit / rollback.

    Usage:
        async with get_async_session() as session:
            # Use session here
            pass
    """
    if not async_session_maker:
        raise DatabaseError("Database not initialized. Call init_database() first.")

    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


def dialect_name() -> str:
    """Name of the active SQLAlchemy dialect ("postgresql", "sqlite", ...)."""
    if not async_engine:
        raise DatabaseError("Database not initialized. Call init_database() first.")
    return async_engine.dialect.name


def upsert(table: Table):
    """
    INSERT statement supporting ON CONFLICT for the active dialect.

    Both the PostgreSQL and SQLite dialects expose on_conflict_do_update /
    on_conflict_do_nothing with the same signature.
    """
    if dialect_name() == "postgresql":
        return postgresql.insert(table)
    return sqlite.insert(table)


KICK_NOTIFY_FUNCTION = """
CREATE OR REPLACE FUNCTION indexer_kick_notify() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify('{channel}', NEW.mission_address);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;
"""

KICK_NOTIFY_TRIGGER = """
DROP TRIGGER IF EXISTS indexer_kicks_notify ON indexer_kicks;
CREATE TRIGGER indexer_kicks_notify AFTER INSERT ON indexer_kicks
    FOR EACH ROW EXECUTE FUNCTION indexer_kick_notify();
"""


class DatabaseManager:
    """Database manager for administrative operations."""

    @staticmethod
    async def create_tables() -> None:
        """Create all tables, plus the kick NOTIFY trigger on PostgreSQL."""
        from mission_indexer.models.base import Base
        import mission_indexer.models  # noqa: F401  registers every table

        if not async_engine:
            raise DatabaseError("Database not initialized")

        logger.info("Creating database tables")
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
            if async_engine.dialect.name == "postgresql":
                await conn.execute(text(KICK_NOTIFY_FUNCTION.format(channel=settings.kick_channel)))
                for statement in KICK_NOTIFY_TRIGGER.strip().split(";"):
                    if statement.strip():
                        await conn.execute(text(statement))
        logger.info("Database tables created")

    @staticmethod
    async def drop_tables() -> None:
        """Drop all tables in the database."""
        from mission_indexer.models.base import Base
        import mission_indexer.models  # noqa: F401

        if not async_engine:
            raise DatabaseError("Database not initialized")

        logger.warning("Dropping all database tables")
        async with async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logger.info("Database tables dropped")

    @staticmethod
    async def health_check() -> bool:
        """Check database connectivity."""
        try:
            async with get_async_session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False
