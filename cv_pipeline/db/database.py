"""
Database connection and session management

- PostgreSQL: async pool (asyncpg)
- SQLite: StaticPool for single-connection access with foreign key support
"""

import logging
import os
from datetime import datetime, timezone
from typing import AsyncGenerator
from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

from cv_pipeline.core.config import settings

logger = logging.getLogger(__name__)

# ============================================================================
# Dialect Detection
# ============================================================================


def _is_sqlite() -> bool:
    """Check if using SQLite backend."""
    return bool(settings.DATABASE_URL) and settings.DATABASE_URL.startswith("sqlite")


# ============================================================================
# SQLite PRAGMA Configuration
# ============================================================================


@event.listens_for(Engine, "connect")
def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Enable foreign key enforcement for SQLite."""
    conn_type = str(type(dbapi_connection))
    if "sqlite" in conn_type.lower():
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


# ============================================================================
# Engine Factories
# ============================================================================


def _create_postgresql_engine():
    """Create the PostgreSQL async engine."""
    url = settings.DATABASE_URL
    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    async_engine = create_async_engine(
        url,
        echo=settings.APP_DEBUG,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,  # Recycle connections every hour
        pool_timeout=30,
        connect_args={
            "timeout": 5,
            "server_settings": {"application_name": settings.SERVICE_NAME},
        },
    )
    logger.info("Database: PostgreSQL")
    return async_engine


def _create_sqlite_engine():
    """Create the SQLite async engine."""
    db_url = settings.DATABASE_URL
    if db_url.startswith("sqlite+aiosqlite:///"):
        db_path = db_url[len("sqlite+aiosqlite:///"):]
    elif db_url.startswith("sqlite:///"):
        db_path = db_url[len("sqlite:///"):]
    else:
        db_path = "./data/cv_pipeline.db"

    db_dir = os.path.dirname(db_path)
    if db_dir and db_path != ":memory:":
        os.makedirs(db_dir, exist_ok=True)

    async_engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=settings.APP_DEBUG,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    logger.info(f"Database: SQLite ({db_path})")
    return async_engine


# ============================================================================
# Engine Creation
# ============================================================================

engine = _create_sqlite_engine() if _is_sqlite() else _create_postgresql_engine()

async_session_factory = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

# Create base class for models
Base = declarative_base()


def utc_now() -> datetime:
    """
    Return current UTC time as a naive datetime (no timezone info).

    Columns are TIMESTAMP WITHOUT TIME ZONE and asyncpg rejects aware
    datetimes for them.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Get database session"""
    from fastapi import HTTPException

    async with async_session_factory() as session:
        try:
            yield session
        except HTTPException:
            # Normal API responses (401, 403, 404, ...), nothing to log
            await session.rollback()
            raise
        except SQLAlchemyError as e:
            logger.error(f"Database error during request: {e}")
            await session.rollback()
            raise
        except Exception as e:
            logger.warning(f"Request error (non-database): {type(e).__name__}")
            await session.rollback()
            raise


async def init_db(create_tables: bool = False):
    """
    Verify the database is reachable.

    Schema is owned by alembic; create_tables is only for local SQLite runs
    without migrations.
    """
    # Import all models to ensure they're registered
    import cv_pipeline.models  # noqa: F401

    try:
        async with engine.begin() as conn:
            if create_tables:
                await conn.run_sync(Base.metadata.create_all)
            await conn.execute(text("SELECT 1"))
        logger.info("Database initialized successfully")
    except SQLAlchemyError as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


async def check_database() -> bool:
    """Return True when a trivial query succeeds."""
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning(f"Database health check failed: {e}")
        return False
