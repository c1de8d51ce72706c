"""Async SQLAlchemy engine and session helpers for the audit-log store."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from packages.audit_shared.config import AuditStoreSettings

logger = logging.getLogger(__name__)


def create_audit_engine(settings: AuditStoreSettings) -> AsyncEngine:
    """Construct the async engine for the configured store URL."""
    return create_async_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=settings.pool_pre_ping,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Return a session factory whose objects stay usable after commit."""
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Yield a session; commit on clean exit, roll back on error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_schema(engine: AsyncEngine, target: MetaData) -> None:
    """Create every table in ``target`` that does not exist yet."""
    async with engine.begin() as connection:
        await connection.run_sync(target.create_all)
    logger.info("audit store schema ensured")
