from __future__ import annotations

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .settings import get_settings

settings = get_settings()

# index and unique names match the alembic revisions
NAMING_CONVENTION = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
}


class Base(DeclarativeBase):
    """Declarative base for the sync tables."""

    metadata = MetaData(naming_convention=NAMING_CONVENTION)


def make_engine(database_url: str) -> AsyncEngine:
    """Async engine; Postgres connections are pinged before reuse."""
    kwargs = {"future": True, "echo": False}
    if database_url.startswith("postgresql"):
        kwargs["pool_pre_ping"] = True
    return create_async_engine(database_url, **kwargs)


engine = make_engine(settings.async_database_url)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session


def session_factory_for(database_url: str) -> tuple[AsyncEngine, async_sessionmaker]:
    """Fresh engine + session factory for worker processes and scheduler ticks."""
    fresh_engine = make_engine(database_url)
    return fresh_engine, async_sessionmaker(fresh_engine, class_=AsyncSession, expire_on_commit=False)
