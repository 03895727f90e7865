"""
Async engine and session management.

Request handlers receive a session through :func:`get_db`. Realtime
subscriptions and the scheduled sweep open a short-lived session per
unit of work with :func:`get_session` and never hold one across change
notifications.
"""

from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from pharmadelivery.core.config import get_settings
from pharmadelivery.core.logging import get_logger

logger = get_logger(__name__)
settings = get_settings()

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def to_async_database_url(url: str) -> str:
    """Point a plain ``postgresql://`` URL at the asyncpg driver."""
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    return url


def create_engine() -> AsyncEngine:
    """
    Build the application engine.

    Tests run without a pool so every session gets a fresh connection on
    the current event loop.
    """
    options: dict[str, Any] = {
        "echo": settings.debug,
        "pool_pre_ping": True,
        "connect_args": {
            "server_settings": {"application_name": settings.app_name},
            "timeout": 10,
        },
    }
    if settings.is_test:
        options["poolclass"] = NullPool
    else:
        options["pool_size"] = settings.db_pool_size
        options["max_overflow"] = settings.db_max_overflow
        options["pool_recycle"] = 3600

    engine = create_async_engine(to_async_database_url(settings.database_url), **options)
    logger.info(
        "Database engine created",
        pool_size=settings.db_pool_size,
        environment=settings.environment,
    )
    return engine


def get_engine() -> AsyncEngine:
    """
    Return the process-wide engine, creating it on first use.

    Raises:
        RuntimeError: If the engine cannot be built from settings
    """
    global _engine

    if _engine is None:
        try:
            _engine = create_engine()
        except (SQLAlchemyError, ValueError) as e:
            logger.error("Failed to create database engine", error=str(e))
            raise RuntimeError(f"Database engine initialization failed: {e}") from e

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory

    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session for one unit of work.

    Commits when the block exits cleanly and rolls back when it raises.
    """
    session = get_session_factory()()

    try:
        yield session
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.warning(
            "Database session rolled back",
            error=str(e),
            error_type=type(e).__name__,
        )
        raise
    finally:
        await session.close()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with get_session() as session:
        yield session


async def close_database_connections() -> None:
    """Dispose of the engine at shutdown."""
    global _engine, _session_factory

    if _engine is None:
        return

    try:
        await _engine.dispose()
        logger.info("Database engine disposed")
    except SQLAlchemyError as e:
        logger.error("Error disposing database engine", error=str(e))
    finally:
        _engine = None
        _session_factory = None
