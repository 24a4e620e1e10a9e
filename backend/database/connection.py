from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from dotenv import load_dotenv
from pathlib import Path
import logging

from config import Settings, get_settings

logger = logging.getLogger(__name__)

# Load environment variables
ROOT_DIR = Path(__file__).parent.parent
load_dotenv(ROOT_DIR / '.env')


class Base(DeclarativeBase):
    pass


def build_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """Create the async engine for the ledger database."""
    settings = settings or get_settings()
    url = settings.get_database_url()

    kwargs = {
        "echo": False,
        "pool_pre_ping": True,
    }
    if url.startswith("postgresql"):
        kwargs["pool_size"] = settings.DB_POOL_SIZE
        kwargs["max_overflow"] = settings.DB_MAX_OVERFLOW
        if settings.POSTGRES_SSLMODE:
            kwargs["connect_args"] = {"ssl": settings.POSTGRES_SSLMODE}

    return create_async_engine(url, **kwargs)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    return build_engine()


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


@lru_cache(maxsize=1)
def get_session_factory() -> async_sessionmaker:
    return build_session_factory(get_engine())


@asynccontextmanager
async def get_session(
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncIterator[AsyncSession]:
    """Open a session for one unit of work (one connection sync, one rule hit)"""
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(engine: Optional[AsyncEngine] = None):
    """Verify the database connection and report the bank feed tables present"""
    engine = engine or get_engine()
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("Ledger database connection successful")

            def _table_names(sync_conn):
                from sqlalchemy import inspect
                return inspect(sync_conn).get_table_names()

            tables = await conn.run_sync(_table_names)
            logger.info(f"Available tables: {tables}")

            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise
