"""Audit-log repository implementations and the writer adapter."""

from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence

from sqlalchemy import Table, func, insert, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from packages.audit_core.domain import AuditContext, AuditRecord
from packages.audit_core.interfaces import AuditLogWriter, DefaultWrite
from packages.audit_shared.ids import generate_ulid
from resources.audit_store.engine import session_scope
from resources.audit_store.schema import audit_logs


class AuditLogRepository(Protocol):
    """Append-only persistence for finished audit records."""

    async def append_many(self, records: Sequence[AuditRecord]) -> None:
        """Persist ``records`` in one batch."""

    async def count(self) -> int:
        """Return the number of persisted records."""

    async def list_records(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        aggregate_type: str | None = None,
        aggregate_id: str | None = None,
    ) -> tuple[AuditRecord, ...]:
        """Return persisted records matching every given filter."""


def _filters(
    entity_type: str | None,
    entity_id: str | None,
    aggregate_type: str | None,
    aggregate_id: str | None,
) -> dict[str, str]:
    given = {
        "entity_type": entity_type,
        "entity_id": entity_id,
        "aggregate_type": aggregate_type,
        "aggregate_id": aggregate_id,
    }
    return {key: value for key, value in given.items() if value is not None}


class InMemoryAuditLogRepository:
    """Append-only in-memory audit-log persistence."""

    def __init__(self) -> None:
        self._records: list[AuditRecord] = []

    async def append_many(self, records: Sequence[AuditRecord]) -> None:
        """Persist records in append-only order."""
        self._records.extend(records)

    async def count(self) -> int:
        """Return number of persisted records."""
        return len(self._records)

    async def list_records(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        aggregate_type: str | None = None,
        aggregate_id: str | None = None,
    ) -> tuple[AuditRecord, ...]:
        """Expose persisted records for tests and diagnostics."""
        wanted = _filters(entity_type, entity_id, aggregate_type, aggregate_id)
        return tuple(
            record
            for record in self._records
            if all(getattr(record, key) == value for key, value in wanted.items())
        )


def record_to_row(record: AuditRecord) -> dict[str, Any]:
    """Return the insert values for one record with a fresh ULID key."""
    row = record.to_row()
    row["id"] = generate_ulid()
    return row


def row_to_record(row: Mapping[str, Any]) -> AuditRecord:
    """Rebuild an ``AuditRecord`` from a stored row."""
    values = {key: value for key, value in row.items() if key != "id"}
    return AuditRecord.model_validate(values)


class SqlAlchemyAuditLogRepository:
    """SQL repository over the ``audit_logs`` table."""

    def __init__(
        self,
        sessions: async_sessionmaker[AsyncSession],
        table: Table = audit_logs,
    ) -> None:
        self._sessions = sessions
        self._table = table

    async def append_many(self, records: Sequence[AuditRecord]) -> None:
        """Insert every record in one executemany round trip."""
        if not records:
            return
        async with session_scope(self._sessions) as session:
            await session.execute(
                insert(self._table), [record_to_row(record) for record in records]
            )

    async def count(self) -> int:
        """Return total persisted record count."""
        async with session_scope(self._sessions) as session:
            total = await session.scalar(select(func.count()).select_from(self._table))
            return int(total or 0)

    async def list_records(
        self,
        *,
        entity_type: str | None = None,
        entity_id: str | None = None,
        aggregate_type: str | None = None,
        aggregate_id: str | None = None,
    ) -> tuple[AuditRecord, ...]:
        """Return matching records in creation order."""
        statement = select(self._table)
        for key, value in _filters(entity_type, entity_id, aggregate_type, aggregate_id).items():
            statement = statement.where(self._table.c[key] == value)
        statement = statement.order_by(self._table.c.created_at, self._table.c.id)
        async with session_scope(self._sessions) as session:
            result = await session.execute(statement)
            return tuple(row_to_record(row) for row in result.mappings())


def repository_writer(repository: AuditLogRepository) -> AuditLogWriter:
    """Adapt ``repository`` into a custom audit writer.

    The repository owns its own connection, so its writes are not part of
    the data client's transaction. Pair it with ``await_write=False`` to
    persist only after the surrounding transaction commits.
    """

    async def write(
        records: Sequence[AuditRecord],
        context: AuditContext,
        default_write: DefaultWrite,
    ) -> None:
        await repository.append_many(records)

    return write
