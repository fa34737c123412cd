"""Async engine and session factory bound to the configured database."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from ticket_triggers.core.config import settings

engine = create_async_engine(settings.database_url, future=True, pool_pre_ping=True)
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
