"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.
"""

from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)

from .config import settings, DatabaseConfig
from .logging import get_logger

logger = get_logger(__name__)


class Database:
    """Owns one async engine and its session maker."""

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = DatabaseConfig.get_database_url(url)
        self.echo = settings.database_echo if echo is None else echo
        self.engine: Optional[AsyncEngine] = None
        self.session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    async def connect(self) -> None:
        """Create the engine and session maker."""
        if self.engine is not None:
            return

        logger.info("Initializing database connections", url=self._safe_url())

        self.engine = create_async_engine(
            self.url,
            **DatabaseConfig.get_engine_config(self.url),
            echo=self.echo
        )

        if self.url.startswith("sqlite"):
            # Durable commits for the state store
            @event.listens_for(self.engine.sync_engine, "connect")
            def _set_sqlite_pragmas(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=FULL")
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        logger.info("Database connections initialized")

    async def close(self) -> None:
        """Close database connections."""
        if self.engine is not None:
            logger.info("Closing database connections")
            await self.engine.dispose()
            self.engine = None
            self.session_maker = None
            logger.info("Database connections closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session wrapped in one transaction.

        Everything done inside the block commits together or not at all.

        Usage:
            async with database.session() as session:
                # Use session here
                pass
        """
        if self.session_maker is None:
            raise RuntimeError("Database not initialized. Call connect() first.")

        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        """Create all tables in the database."""
        from holder_rewards.models.base import Base
        # Register every model on the metadata
        import holder_rewards.models  # noqa: F401

        if self.engine is None:
            raise RuntimeError("Database not initialized")

        logger.info("Creating database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return False

    def _safe_url(self) -> str:
        # Never log credentials
        if "@" in self.url:
            scheme, rest = self.url.split("://", 1)
            return f"{scheme}://***@{rest.split('@', 1)[1]}"
        return self.url


# Global database instance used by the service entry point
_database: Optional[Database] = None


async def init_database(url: Optional[str] = None) -> Database:
    """Initialize the global database and create tables."""
    global _database
    if _database is None:
        _database = Database(url)
        await _database.connect()
        await _database.create_tables()
    return _database


async def close_database() -> None:
    """Close the global database."""
    global _database
    if _database is not None:
        await _database.close()
        _database = None


def get_database() -> Database:
    """Get the initialized global database."""
    if _database is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _database
