"""
Async SQLAlchemy engine and the ambient transaction.

CRUD methods open their work with ``transaction()``; nested calls join the
transaction already open on the current task instead of starting a new one,
so ``slot_lock`` and the review write can group several CRUD calls into one
commit.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from contextvars import ContextVar

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app import settings


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None
_current_session: ContextVar[AsyncSession | None] = ContextVar(
    "current_session", default=None
)


def init_engine(url: str | None = None) -> AsyncEngine:
    global _engine, _sessionmaker
    _engine = create_async_engine(url or settings.db_url)
    _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
    return _engine


def get_engine() -> AsyncEngine:
    if _engine is None:
        return init_engine()
    return _engine


async def create_schema() -> None:
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global _engine, _sessionmaker
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None


@asynccontextmanager
async def transaction() -> AsyncIterator[AsyncSession]:
    """Yield the session of the enclosing transaction, or open one that commits on exit."""
    session = _current_session.get()
    if session is not None:
        yield session
        return

    get_engine()
    assert _sessionmaker is not None
    async with _sessionmaker() as session, session.begin():
        token = _current_session.set(session)
        try:
            yield session
        finally:
            _current_session.reset(token)
