"""Engine and session wiring for the ledger store."""
from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from .config import Settings, get_settings


class Base(DeclarativeBase):
    """Declarative base shared by the ledger and log tables."""


def engine_options(database_url: str, echo: bool = False) -> dict[str, Any]:
    """Keyword arguments for :func:`create_async_engine` suited to the backend.

    SQLite files keep SQLAlchemy's default pool. Server databases get
    pre-ping and hourly recycling so calls survive dropped connections.
    """

    options: dict[str, Any] = {"echo": echo}
    if make_url(database_url).get_backend_name() != "sqlite":
        options.update(pool_pre_ping=True, pool_recycle=3600)
    return options


def create_engine(settings: Settings | None = None, database_url: str | None = None) -> AsyncEngine:
    settings = settings or get_settings()
    url = database_url or settings.database_url
    return create_async_engine(url, **engine_options(url, settings.echo_sql))


def make_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # Rows are read back after commit by the ledger operations.
    return async_sessionmaker(bind=bind, expire_on_commit=False)


engine = create_engine()
SessionFactory = make_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding one session per request."""

    async with SessionFactory() as session:
        yield session


__all__ = [
    "Base",
    "SessionFactory",
    "create_engine",
    "engine",
    "engine_options",
    "get_session",
    "make_session_factory",
]
