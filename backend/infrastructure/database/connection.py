"""Database connection and session management for the subscription record store."""
from typing import Any, AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from ..config import get_settings

settings = get_settings()


def engine_options(database_url: str, environment: str) -> dict[str, Any]:
    """
    Engine keyword arguments for the configured backend.

    PostgreSQL gets a bounded pool and TLS in production. SQLite (local
    development) takes no pool sizing or TLS options.
    """
    options: dict[str, Any] = {"echo": settings.database_echo}
    if database_url.startswith("sqlite"):
        return options

    options.update(
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=10,
        pool_recycle=3600,
    )
    if environment == "production":
        options["connect_args"] = {"ssl": "require"}
    return options


# Create async engine
engine = create_async_engine(
    settings.database_url,
    **engine_options(settings.database_url, settings.environment),
)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Base class for models
Base = declarative_base()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting database sessions.

    The subscription repository commits each write itself; anything left
    uncommitted when a request fails is rolled back here.
    """
    async with async_session_maker() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """Create the subscription record tables if they do not exist."""
    from . import models  # noqa: F401  registers tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Close database connections."""
    await engine.dispose()
