"""
Database engine and declarative base for the SQL alert store.

Uses async SQLAlchemy 2.0: asyncpg in production, aiosqlite in dev and tests.
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = structlog.get_logger(__name__)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for AgroAlert models."""

    pass


def create_store_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create the async engine for an alert store URL."""
    kwargs: dict = {"echo": echo}
    if url.startswith("postgresql"):
        kwargs.update(pool_size=5, max_overflow=5, pool_recycle=1800)
    engine = create_async_engine(url, **kwargs)
    logger.info("store_engine_created", db=url.split("@")[-1] if "@" in url else url.split("://")[0])
    return engine


async def init_db(engine: AsyncEngine) -> None:
    """Create the alert tables if they do not exist yet."""
    import agroalert.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("store_tables_ready")
