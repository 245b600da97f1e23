# omintel/db.py
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
)
from sqlalchemy.pool import StaticPool

from omintel.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Owns the async engine and session factory for one process or one task run.
    Built by omintel.services at bootstrap and disposed there.
    """

    def __init__(self, url: str, engine: Optional[AsyncEngine] = None, echo: bool = False):
        if engine is None:
            kwargs = {"echo": echo, "future": True}
            # in-memory sqlite (tests) must share one connection
            if url.startswith("sqlite") and (":memory:" in url or url.endswith("://")):
                kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
            engine = create_async_engine(url, **kwargs)
        self.engine = engine
        self.sessionmaker = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    async def init_models(self) -> None:
        """
        Development helper that creates tables from ORM metadata.
        In production, prefer Alembic migrations instead of create_all().
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created/checked")

    async def ping(self) -> bool:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True

    async def close(self) -> None:
        """Call this on shutdown to cleanly dispose connection pool."""
        await self.engine.dispose()
        logger.info("Database engine disposed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Ensures session is closed and rolled back on error.
        """
        async with self.sessionmaker() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
