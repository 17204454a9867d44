import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from driftwatch.core.config import settings
from driftwatch.core.errors import StorageUnavailable

# Initialize logger
logger = logging.getLogger(__name__)


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    In-memory SQLite shares one connection so every session sees the same
    database.
    """
    kwargs = {"echo": echo}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
    return create_async_engine(url, **kwargs)


def build_session_factory(bind: AsyncEngine) -> sessionmaker:
    return sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


# Create async SQLAlchemy engine
engine = build_engine(settings.ASYNC_DATABASE_URL)

# Create async session factory
async_session = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting async DB session"""
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database error: {str(e)}")
            raise
        finally:
            await session.close()


async def create_db_and_tables(bind: Optional[AsyncEngine] = None) -> None:
    """
    Create database and tables on startup.

    Raises:
        StorageUnavailable: Storage cannot be reached at all
    """
    # Table classes register on SQLModel.metadata at import
    import driftwatch.models.drift  # noqa: F401

    bind = bind or engine
    try:
        async with bind.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        logger.info("Database and tables created successfully")
    except (SQLAlchemyError, OSError) as e:
        logger.error(f"Error creating database and tables: {str(e)}")
        raise StorageUnavailable(f"Cannot reach persistent storage: {e}") from e
