"""Tests for audit-log repositories and the SQL store wiring."""

from __future__ import annotations

import importlib.util
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, AsyncIterator, Callable

import pytest
import pytest_asyncio
from sqlalchemy import func, inspect, select

from packages.audit_core import AuditContext, AuditContextProvider
from packages.audit_core.domain import AuditAction, AuditRecord
from packages.audit_orm import AuditedClient
from packages.audit_orm.testing import InMemoryDataClient
from packages.audit_shared.config import AuditStoreSettings
from resources.audit_store import (
    AuditStore,
    InMemoryAuditLogRepository,
    open_audit_store,
    repository_writer,
    row_to_record,
)
from resources.audit_store.engine import create_session_factory, session_scope


def _ensure_async_driver_ready() -> None:
    """Skip when the async SQLite stack cannot run in this environment."""
    if importlib.util.find_spec("aiosqlite") is None:
        pytest.skip("aiosqlite is not installed")
    if importlib.util.find_spec("greenlet") is None:
        pytest.skip("greenlet is required for SQLAlchemy async execution")


def _record(
    *,
    entity_type: str = "Post",
    entity_id: str = "p-1",
    aggregate_type: str = "Post",
    aggregate_id: str = "p-1",
    action: AuditAction = AuditAction.CREATE,
    **values: Any,
) -> AuditRecord:
    return AuditRecord(
        actor_category="user",
        actor_type="User",
        actor_id="actor-1",
        entity_category="model",
        entity_type=entity_type,
        entity_id=entity_id,
        aggregate_category="model",
        aggregate_type=aggregate_type,
        aggregate_id=aggregate_id,
        action=action,
        created_at=datetime(2026, 1, 1, tzinfo=timezone.utc),
        **values,
    )


def _settings(tmp_path: Path, **overrides: Any) -> AuditStoreSettings:
    return AuditStoreSettings(url=f"sqlite+aiosqlite:///{tmp_path / 'audit.db'}", **overrides)


@pytest_asyncio.fixture()
async def store(tmp_path: Path) -> AsyncIterator[AuditStore]:
    _ensure_async_driver_ready()
    opened = await open_audit_store(_settings(tmp_path))
    yield opened
    await opened.close()


@pytest.mark.asyncio
async def test_in_memory_repository_filters_in_append_order() -> None:
    repository = InMemoryAuditLogRepository()
    await repository.append_many(
        [
            _record(entity_id="p-1", aggregate_id="p-1"),
            _record(entity_id="p-1", aggregate_type="User", aggregate_id="u-1"),
            _record(entity_id="p-2", aggregate_id="p-2"),
        ]
    )

    assert await repository.count() == 3
    by_entity = await repository.list_records(entity_type="Post", entity_id="p-1")
    assert [record.aggregate_type for record in by_entity] == ["Post", "User"]
    by_aggregate = await repository.list_records(aggregate_type="User", aggregate_id="u-1")
    assert [record.entity_id for record in by_aggregate] == ["p-1"]


@pytest.mark.asyncio
async def test_sql_repository_appends_and_filters(store: AuditStore) -> None:
    repository = store.repository
    await repository.append_many([])
    await repository.append_many(
        [
            _record(entity_id="p-1", aggregate_id="p-1"),
            _record(entity_id="p-1", aggregate_type="User", aggregate_id="u-1"),
            _record(entity_type="Tag", entity_id="t-1", aggregate_type="Tag", aggregate_id="t-1"),
        ]
    )

    assert await repository.count() == 3
    posts = await repository.list_records(entity_type="Post", entity_id="p-1")
    assert {record.aggregate_type for record in posts} == {"Post", "User"}
    (under_user,) = await repository.list_records(aggregate_type="User", aggregate_id="u-1")
    assert under_user.entity_id == "p-1"
    assert under_user.action is AuditAction.CREATE
    assert await repository.list_records(entity_type="Comment") == ()


@pytest.mark.asyncio
async def test_absent_json_is_sql_null_and_nested_null_is_kept(store: AuditStore) -> None:
    await store.repository.append_many(
        [
            _record(
                action=AuditAction.UPDATE,
                before={"name": None},
                after={"name": "x"},
                changes={"name": {"old": None, "new": "x"}},
            ),
            _record(entity_id="p-2", aggregate_id="p-2", after={"name": "y"}),
        ]
    )
    table = store.repository._table
    sessions = create_session_factory(store.engine)

    async with session_scope(sessions) as session:
        null_before = await session.scalar(
            select(func.count()).select_from(table).where(table.c.before.is_(None))
        )
        updated = (
            await session.execute(select(table).where(table.c.entity_id == "p-1"))
        ).mappings().one()

    assert null_before == 1
    record = row_to_record(updated)
    assert record.before == {"name": None}
    assert record.changes == {"name": {"old": None, "new": "x"}}
    (created,) = await store.repository.list_records(entity_id="p-2")
    assert created.before is None
    assert created.changes is None


@pytest.mark.asyncio
async def test_store_honours_configured_table_name(tmp_path: Path) -> None:
    _ensure_async_driver_ready()
    custom = await open_audit_store(_settings(tmp_path, table_name="entity_history"))
    try:
        await custom.repository.append_many([_record()])

        async with custom.engine.connect() as connection:
            tables = await connection.run_sync(
                lambda sync_connection: inspect(sync_connection).get_table_names()
            )
        assert tables == ["entity_history"]
        assert await custom.repository.count() == 1
    finally:
        await custom.close()


@pytest.mark.asyncio
async def test_repository_writer_persists_records_after_drain(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
) -> None:
    repository = InMemoryAuditLogRepository()
    client = make_client(writer=repository_writer(repository), await_write=False)

    with provider.scope(audit_context):
        post = await client.model("Post").create(data={"title": "hello"})
    await client.drain()

    records = await repository.list_records(entity_type="Post")
    assert [record.entity_id for record in records] == [post["id"]]
    assert records[0].after is not None and records[0].after["title"] == "hello"
    assert data_client.rows("AuditLog") == []


@pytest.mark.asyncio
async def test_repository_writer_over_sql_store(
    store: AuditStore,
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
) -> None:
    client = make_client(writer=repository_writer(store.repository))

    with provider.scope(audit_context):
        user = await client.model("User").create(
            data={"email": "s@example.com", "password": "hunter2"}
        )

    (record,) = await store.repository.list_records(entity_type="User")
    assert record.entity_id == user["id"]
    assert record.actor_id == "actor-1"
    assert record.request_context == {"request_id": "req-1", "ip": "10.0.0.1"}
    assert record.after is not None
    assert record.after["password"] == {"redacted": True, "had_value": True}
