"""
db/session.py — Database Connection & Session Management
=========================================================
Async SQLAlchemy engine + session factory.
Called by main.py on startup via init_db().

Routes use get_db() as a FastAPI dependency. Ledger operations commit
their own transaction while holding the aggregate lock, so the dependency
only commits whatever is left over (audit rows of read endpoints).
"""

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from config import settings
import logging

logger = logging.getLogger("aidledger.db")

# Convert standard postgres:// URL to async postgresql+asyncpg://
DATABASE_URL = settings.DATABASE_URL.replace(
    "postgresql://", "postgresql+asyncpg://"
)


def build_engine(url: str = DATABASE_URL, **kwargs):
    """Create an async engine; pool sizing only applies to server databases."""
    if not url.startswith("sqlite"):
        kwargs.setdefault("pool_size", settings.DB_POOL_SIZE)
        kwargs.setdefault("max_overflow", settings.DB_MAX_OVERFLOW)
    return create_async_engine(url, echo=settings.DEBUG, **kwargs)


engine = build_engine()

# Session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def init_db(bind=None):
    """Create missing tables. `bind` lets tests point at a throwaway engine."""
    from db import models  # noqa — import triggers table registration
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Schema ready ({len(Base.metadata.tables)} tables)")


async def get_db():
    """One session per request; anything a read endpoint staged is committed on the way out."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            if session.in_transaction():
                await session.commit()
        except Exception:
            await session.rollback()
            raise
