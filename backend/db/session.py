"""
TrolleyOps Database Session Management

Async SQLAlchemy engine and session factory, owned by an explicitly
constructed Database object (created in the API lifespan or a worker run and
disposed there).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import Settings


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""

    pass


class Database:
    """Engine + session factory with an explicit init/close lifecycle."""

    def __init__(self, database_url: str, echo: bool = False, **engine_kwargs):
        self.engine: AsyncEngine = create_async_engine(database_url, echo=echo, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        kwargs = {}
        if not settings.database_url.startswith("sqlite"):
            kwargs = {
                "pool_size": settings.database_pool_size,
                "max_overflow": settings.database_max_overflow,
                "pool_pre_ping": True,
            }
        return cls(settings.database_url, echo=settings.database_echo, **kwargs)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def create_all(self) -> None:
        """Create every table (local/dev/test bootstrap)."""
        import db.models  # noqa: F401  register mappers

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
