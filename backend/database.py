# database.py - Async database setup for the board store
import os
import logging
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

logger = logging.getLogger("agentboard.db")

# Database configuration
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./agentboard.db")


def enable_sqlite_foreign_keys(engine):
    """SQLite ships with FK enforcement off; cascades depend on it."""
    if engine.url.get_backend_name() != "sqlite":
        return

    @event.listens_for(engine.sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_engine_for(url: str, echo: bool = False):
    """Build an async engine with the pragmas the schema relies on."""
    kwargs = {"echo": echo, "future": True}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=20, max_overflow=0, pool_pre_ping=True, pool_recycle=3600)
    engine = create_async_engine(url, **kwargs)
    enable_sqlite_foreign_keys(engine)
    return engine


def create_session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
        autocommit=False,
    )


engine = create_engine_for(
    DATABASE_URL,
    echo=os.getenv("SQL_ECHO", "false").lower() == "true",
)

# Create async session factory
async_session_maker = create_session_factory(engine)


async def get_db_session():
    """Dependency for getting database session (FastAPI Depends)"""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(target_engine=None):
    """Initialize database and create tables"""
    from models import Base

    async with (target_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("✅ Database initialized successfully")


async def close_db():
    """Close database connection pool"""
    await engine.dispose()


@asynccontextmanager
async def get_db_context(session_factory=None):
    """Context manager for database operations outside of FastAPI request cycle"""
    async with (session_factory or async_session_maker)() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
