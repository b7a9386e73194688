"""
Database Handle
Async SQLAlchemy engine that is created lazily, at most once per handle.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class Database:
    """
    Storage handle shared by the registry.

    Constructed once by the app factory and passed to components. The engine
    and schema are initialized on first use; concurrent first use is
    serialized so initialization happens exactly once. A failed
    initialization is forgotten so the next caller can retry.

    Usage:
        db = Database("sqlite+aiosqlite:///./genie.db")
        async with db.session() as session:
            ...
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self._engine: Optional[AsyncEngine] = None
        self._sessionmaker: Optional[async_sessionmaker] = None
        self._init_lock = asyncio.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._sessionmaker is not None

    async def connect(self) -> async_sessionmaker:
        """Initialize the engine and schema once, then reuse"""
        if self._sessionmaker is not None:
            return self._sessionmaker

        async with self._init_lock:
            if self._sessionmaker is not None:
                return self._sessionmaker

            engine = create_async_engine(self.url, echo=self.echo)
            try:
                # Import registers the mapped tables on Base.metadata
                from backend.models import shop  # noqa: F401

                async with engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
            except Exception:
                await engine.dispose()
                raise

            self._engine = engine
            self._sessionmaker = async_sessionmaker(engine, expire_on_commit=False)
            logger.info("Database connected")

        return self._sessionmaker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        factory = await self.connect()
        async with factory() as session:
            yield session

    async def dispose(self):
        """Close the engine; the handle may be reconnected afterwards"""
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessionmaker = None
