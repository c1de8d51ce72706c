"""Settings-driven wiring for the SQL audit-log store."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine

from packages.audit_shared.config import AuditStoreSettings
from resources.audit_store.engine import (
    create_audit_engine,
    create_schema,
    create_session_factory,
)
from resources.audit_store.repository import SqlAlchemyAuditLogRepository
from resources.audit_store.schema import audit_log_table

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuditStore:
    """Open engine plus the repository bound to it."""

    engine: AsyncEngine
    repository: SqlAlchemyAuditLogRepository

    async def close(self) -> None:
        """Dispose the engine's connection pool."""
        await self.engine.dispose()


async def open_audit_store(settings: AuditStoreSettings) -> AuditStore:
    """Create the engine, ensure the configured table exists, return the store."""
    table_metadata = MetaData()
    table = audit_log_table(settings.table_name, table_metadata)
    engine = create_audit_engine(settings)
    await create_schema(engine, table_metadata)
    logger.info("audit store opened on table %s", settings.table_name)
    return AuditStore(
        engine=engine,
        repository=SqlAlchemyAuditLogRepository(create_session_factory(engine), table),
    )
