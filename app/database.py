import logging
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger(__name__)

Base = declarative_base()


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Build the async engine for the task store"""
    url = make_url(database_url.replace("postgresql://", "postgresql+asyncpg://"))

    if url.get_backend_name() == "sqlite":
        # File-based sqlite needs its directory; aiosqlite won't create it
        if url.database and url.database != ":memory:":
            Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(url, echo=echo)

    return create_async_engine(
        url,
        echo=echo,
        pool_pre_ping=True,
    )


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_db(engine: AsyncEngine):
    """Initialize database - create tables if not exist"""
    # Models must be imported so their tables are registered on Base.metadata
    from app.models import image, task  # noqa: F401

    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Database initialization failed: {e}")
        raise


async def close_db(engine: AsyncEngine):
    """Close database connections"""
    await engine.dispose()
    logger.info("Database connections closed")


async def check_db_connection(session_factory: async_sessionmaker[AsyncSession]) -> bool:
    """Check if database is healthy"""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
            return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False
