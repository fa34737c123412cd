"""Shared pytest fixtures for engine tests and database isolation."""

from __future__ import annotations

import os

os.environ.setdefault("ENVIRONMENT", "test")

import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from ticket_triggers.core.config import settings  # noqa: E402
from ticket_triggers.db.base import Base  # noqa: E402


@pytest_asyncio.fixture()
async def session_factory():
    database_url = settings.test_database_url or "sqlite+aiosqlite://"
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            future=True,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    else:
        engine = create_async_engine(database_url, future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest_asyncio.fixture()
async def session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session
