"""Database session utilities."""

from __future__ import annotations

from collections.abc import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from persona_chat.db.base import Base
from persona_chat.settings import settings


engine = create_async_engine(settings.database.url, echo=settings.database.echo, pool_pre_ping=True)
SessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Yield a database session for request scope."""

    async with SessionLocal() as session:
        yield session


async def create_tables(bind: AsyncEngine = engine) -> None:
    """Create any missing tables."""

    async with bind.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)
