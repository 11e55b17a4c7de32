# hometelemetry/core/database.py

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base

from hometelemetry.core.config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

_engine: Optional[AsyncEngine] = None
_sessionmaker: Optional[async_sessionmaker] = None


async def connect_database(url: Optional[str] = None) -> async_sessionmaker:
    """Create the engine, create missing tables and return a session factory."""
    global _engine, _sessionmaker

    if _engine is not None and _sessionmaker is not None:
        return _sessionmaker

    # register the tables on Base.metadata
    from hometelemetry.models import readings  # noqa: F401

    db_url = url or settings.DATABASE_URL
    logger.info(f"Connecting to local store ({db_url.split('://', 1)[0]})")

    _engine = create_async_engine(db_url, future=True)
    async with _engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False, class_=AsyncSession)
    logger.info("Local store ready")
    return _sessionmaker


async def close_database() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
    logger.info("Local store closed")


def get_sessionmaker() -> async_sessionmaker:
    if _sessionmaker is None:
        raise RuntimeError("Database not initialized. Call connect_database() at startup.")
    return _sessionmaker
