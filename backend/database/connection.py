from functools import lru_cache
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text

from config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


@lru_cache()
def get_engine() -> AsyncEngine:
    """Create the async engine on first use so imports never need a database."""
    settings = get_settings()
    database_url = settings.get_database_url()

    connect_args = {}
    if database_url.startswith("postgresql+asyncpg") and settings.POSTGRES_SSLMODE == "require":
        connect_args["ssl"] = "require"

    return create_async_engine(
        database_url,
        echo=False,
        pool_pre_ping=True,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        connect_args=connect_args
    )


@lru_cache()
def get_session_factory() -> async_sessionmaker:
    return async_sessionmaker(
        get_engine(),
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


async def get_db():
    """Dependency to get database session"""
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """Verify the store is reachable and the invoicing tables exist"""
    expected = set(Base.metadata.tables.keys())
    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("PostgreSQL connection successful")

            result = await conn.execute(text("""
                SELECT table_name
                FROM information_schema.tables
                WHERE table_schema = 'public'
            """))
            tables = {row[0] for row in result.fetchall()}
            missing = sorted(expected - tables)
            if missing:
                logger.warning(f"Missing tables: {missing}")
            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
