"""Async engine, session factory and the ``get_db`` dependency."""

from __future__ import annotations

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from gallery.config import settings

engine = create_async_engine(settings.DATABASE_URL, future=True)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def get_db() -> AsyncIterator[AsyncSession]:
    async with async_session_factory() as session:
        yield session


async def create_tables() -> None:
    """Create any missing tables; there is no migration tooling."""
    from gallery.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
