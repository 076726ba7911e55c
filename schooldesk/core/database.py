"""SchoolDesk Database Configuration - Async SQLAlchemy."""

from collections.abc import AsyncGenerator

from fastapi import Request
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from schooldesk.core.config import settings


def _engine_options(url: str) -> dict:
    # SQLite (used by the test suite) does not accept queue pool sizing
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_size": settings.db_pool_size,
        "max_overflow": settings.db_max_overflow,
        "pool_timeout": settings.db_pool_timeout,
        "pool_recycle": settings.db_pool_recycle,
        "pool_pre_ping": True,
    }


def build_engine(url: str | None = None) -> AsyncEngine:
    """Create an async engine for ``url`` (defaults to DATABASE_URL)."""
    url = url or str(settings.database_url)
    return create_async_engine(
        url,
        echo=settings.debug and settings.log_level == "DEBUG",
        **_engine_options(url),
    )


engine = build_engine()

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all models."""


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session.

    Uses the session factory installed on ``app.state`` by the application
    factory, falling back to the module-level one.
    """
    maker = getattr(request.app.state, "session_maker", None) or async_session_maker
    async with maker() as session:
        try:
            yield session
            await session.commit()
        except (Exception, BaseException):
            # Also covers asyncio.CancelledError so a cancelled request rolls back
            await session.rollback()
            raise
        finally:
            await session.close()


async def check_db_connection(session_maker: async_sessionmaker | None = None) -> bool:
    """Check if database is reachable."""
    maker = session_maker or async_session_maker
    try:
        async with maker() as session:
            await session.execute(text("SELECT 1"))
            return True
    except (OSError, ConnectionError) as e:
        from schooldesk.core.logging import get_logger

        get_logger("database").debug(f"Database connection check failed: {e}")
        return False
    except Exception as e:
        from schooldesk.core.logging import get_logger

        get_logger("database").warning(f"Unexpected error checking database connection: {e}")
        return False
