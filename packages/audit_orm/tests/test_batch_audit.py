"""End-to-end tests for create_many, update_many and delete_many auditing."""

from __future__ import annotations

from typing import Any, Callable

import pytest

from packages.audit_core import AuditContext, AuditContextProvider, define_entity, foreign_key, to
from packages.audit_core.domain import EnricherConfig, EnrichmentMeta
from packages.audit_orm import AuditedClient
from packages.audit_orm.testing import InMemoryDataClient

Rows = Callable[..., list[dict[str, Any]]]


async def _seed_posts(data_client: InMemoryDataClient) -> None:
    await data_client.model("Post").create_many(
        data=[
            {"title": "a", "author_id": "u-1"},
            {"title": "b", "author_id": "u-1"},
            {"title": "c", "author_id": "u-1"},
            {"title": "other", "author_id": "u-2"},
        ]
    )
    data_client.queries.reset()


@pytest.mark.asyncio
@pytest.mark.parametrize("count", [1, 5, 20])
async def test_create_many_round_trips_do_not_grow_with_batch_size(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    entities: dict[str, Any],
    data_client: InMemoryDataClient,
    audit_rows: Rows,
    count: int,
) -> None:
    calls: list[tuple[str, int]] = []

    def author_context(items: list[Any], client: Any, meta: EnrichmentMeta) -> list[Any]:
        calls.append((meta.aggregate_type, len(items)))
        return [{"author": item["author_id"]} for item in items]

    client = make_client(
        entities={
            **entities,
            "Post": define_entity(
                type="Post",
                aggregates=[to("User", foreign_key("author_id"))],
                aggregate_context_map={"User": EnricherConfig(enricher=author_context)},
            ),
        }
    )
    rows = [{"title": f"post {index}", "author_id": "u-1"} for index in range(count)]

    with provider.scope(audit_context):
        result = await client.model("Post").create_many(data=rows)

    assert result == {"count": count}
    assert data_client.queries.count == 2
    assert data_client.queries.for_model("Post") == ["create_many"]
    assert calls == [("User", count)]
    records = audit_rows("Post")
    assert len(records) == 2 * count
    assert {r["entity_id"] for r in records} == {p["id"] for p in data_client.rows("Post")}
    assert all(
        r["aggregate_context"] == {"author": "u-1"}
        for r in records
        if r["aggregate_type"] == "User"
    )
    assert "id" not in rows[0]


@pytest.mark.asyncio
async def test_create_many_without_client_ids_reads_back_once_by_unique_fields(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    client = make_client()

    with provider.scope(audit_context):
        await client.model("Setting").create_many(
            data=[{"key": "a", "value": 1}, {"key": "b", "value": 2}, {"key": "c"}]
        )

    assert data_client.queries.reads() == 1
    assert data_client.queries.for_model("Setting") == ["create_many", "find_many"]
    records = audit_rows("Setting")
    assert [r["entity_id"] for r in records] == ["1", "2", "3"]
    assert [r["after"]["key"] for r in records] == ["a", "b", "c"]


@pytest.mark.asyncio
async def test_batch_entity_context_is_enriched_in_one_call(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    entities: dict[str, Any],
    audit_rows: Rows,
) -> None:
    calls: list[int] = []

    async def label(items: list[Any], client: Any, meta: EnrichmentMeta) -> list[Any]:
        calls.append(len(items))
        return [{"label": item["name"].title()} for item in items]

    client = make_client(
        entities={
            **entities,
            "Tag": define_entity(type="Tag", entity_context=EnricherConfig(enricher=label)),
        }
    )

    with provider.scope(audit_context):
        await client.model("Tag").create_many(data=[{"name": "python"}, {"name": "rust"}])

    assert calls == [2]
    assert [r["entity_context"] for r in audit_rows("Tag")] == [
        {"label": "Python"},
        {"label": "Rust"},
    ]


@pytest.mark.asyncio
async def test_update_many_pairs_before_and_after_by_id(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    await _seed_posts(data_client)
    client = make_client()

    with provider.scope(audit_context):
        result = await client.model("Post").update_many(
            where={"author_id": "u-1"}, data={"published": True}
        )

    assert result == {"count": 3}
    assert data_client.queries.for_model("Post") == ["find_many", "update_many", "find_many"]
    records = audit_rows("Post")
    assert len(records) == 6
    assert {r["aggregate_type"] for r in records} == {"Post", "User"}
    assert all(r["action"] == "update" for r in records)
    assert all(r["changes"] == {"published": {"old": None, "new": True}} for r in records)
    assert "other" not in {r["after"]["title"] for r in records}


@pytest.mark.asyncio
async def test_update_many_matching_nothing_writes_no_audit_rows(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    await _seed_posts(data_client)
    client = make_client()

    with provider.scope(audit_context):
        result = await client.model("Post").update_many(
            where={"author_id": "nobody"}, data={"published": True}
        )

    assert result == {"count": 0}
    assert audit_rows() == []
    assert "AuditLog" not in {model for model, _ in data_client.queries.entries}


@pytest.mark.asyncio
async def test_delete_many_records_pre_read_rows(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    await _seed_posts(data_client)
    client = make_client()

    with provider.scope(audit_context):
        await client.model("Post").delete_many(where={"author_id": "u-1"})

    assert [row["title"] for row in data_client.rows("Post")] == ["other"]
    assert data_client.queries.for_model("Post") == ["find_many", "delete_many"]
    records = audit_rows("Post")
    assert len(records) == 6
    assert all(r["action"] == "delete" and r["after"] is None for r in records)
    assert sorted({r["before"]["title"] for r in records}) == ["a", "b", "c"]
