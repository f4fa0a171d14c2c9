"""
Database Connection and Session Management

This module handles database connectivity using SQLAlchemy with an async
driver (asyncpg for PostgreSQL, aiosqlite for local SQLite files).
"""
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy import text
import logging

from face_organizer.config import DATABASE_URL, DB_POOL_SIZE, DB_MAX_OVERFLOW

logger = logging.getLogger(__name__)


def build_engine(url: str = DATABASE_URL) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    engine_kwargs = {
        "echo": False,  # Set to True for SQL debugging
        "pool_pre_ping": True,  # Enable connection health checks
    }
    if not url.startswith("sqlite"):
        engine_kwargs["pool_size"] = DB_POOL_SIZE
        engine_kwargs["max_overflow"] = DB_MAX_OVERFLOW
    return create_async_engine(url, **engine_kwargs)


def build_session_maker(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory shared by the service and the API."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine()
async_session_maker = build_session_maker(engine)

# Base class for ORM models
Base = declarative_base()


async def init_db(bind: AsyncEngine = engine):
    """Verify connectivity and create missing tables."""
    # Imported for its side effect of registering the tables on Base.metadata
    from face_organizer import models  # noqa: F401

    try:
        async with bind.begin() as conn:
            await conn.execute(text("SELECT 1"))
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database connection established successfully")
    except Exception as e:
        logger.error(f"Failed to connect to database: {e}")
        raise


async def close_db(bind: AsyncEngine = engine):
    """Close database connection pool."""
    await bind.dispose()
    logger.info("Database connection pool closed")
