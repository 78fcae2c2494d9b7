"""
Database session management.
"""
# app/db/session.py
import logging
from contextlib import asynccontextmanager
from typing import AsyncContextManager, AsyncGenerator, Callable, Type, TypeVar

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.core.exceptions import StructuralError
from app.db.base import Base

logger = logging.getLogger("fleetsync.db")

_engine_options = {"echo": settings.DEBUG}
if not settings.DATABASE_URL.startswith("sqlite"):
    # Pool settings only apply to server databases
    _engine_options.update(
        pool_size=20,
        max_overflow=30,
        pool_timeout=30,
        pool_recycle=3600,
        pool_pre_ping=True
    )

engine = create_async_engine(settings.DATABASE_URL, **_engine_options)

# Create async session factory
async_session_factory = sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)

# Create a type variable for repository types
T = TypeVar('T')

RepositoryContext = Callable[[Type[T]], AsyncContextManager[T]]


def make_repository_context(session_factory: Callable[[], AsyncSession]) -> RepositoryContext:
    """
    Build a repository context manager bound to a session factory.

    Services take one of these so tests can point them at a throwaway engine.

    Usage:
        repositories = make_repository_context(async_session_factory)
        async with repositories(ImportJobRepository) as repo:
            # Use repo here
    """
    @asynccontextmanager
    async def _repository_context(repo_type: Type[T]) -> AsyncGenerator[T, None]:
        session = session_factory()
        try:
            yield repo_type(session)
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            logger.error(f"Database session rolled back due to: {str(e)}")
            raise StructuralError(f"Record store error: {str(e)}") from e
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    return _repository_context


# Context manager for repositories with the application engine
get_repository_context = make_repository_context(async_session_factory)


async def initialize_database(create_tables: bool = False) -> None:
    """
    Initialize the database connection pool and run any startup tasks.

    This should be called during application startup.
    """
    logger.info("Initializing database connection pool")

    async with engine.begin() as conn:
        try:
            await conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")
            if create_tables:
                await conn.run_sync(Base.metadata.create_all)
                logger.info("Database tables ensured")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    logger.info("Database initialization complete")


async def close_database_connections() -> None:
    """
    Close all database connections in the pool.

    This should be called during application shutdown.
    """
    logger.info("Closing database connections")

    # Dispose the engine to close all connections in the pool
    await engine.dispose()

    logger.info("Database connections closed")
