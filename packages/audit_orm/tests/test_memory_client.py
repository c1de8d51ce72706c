"""Tests for the in-memory data client."""

from __future__ import annotations

import pytest

from packages.audit_orm.testing import InMemoryDataClient
from packages.audit_shared.errors import (
    DataClientError,
    RecordNotFoundError,
    UniqueConstraintError,
)


@pytest.mark.asyncio
async def test_nested_create_links_children_and_includes_them(
    data_client: InMemoryDataClient,
) -> None:
    user = await data_client.model("User").create(
        data={
            "email": "ada@example.com",
            "name": "Ada",
            "posts": {"create": [{"title": "First"}, {"title": "Second"}]},
            "profile": {"create": {"bio": "hello"}},
        },
        include={"posts": True, "profile": True},
    )

    assert user["role"] == "member"
    assert [post["title"] for post in user["posts"]] == ["First", "Second"]
    assert all(post["author_id"] == user["id"] for post in user["posts"])
    assert user["profile"]["user_id"] == user["id"]


@pytest.mark.asyncio
async def test_owned_relation_connect_sets_foreign_key(data_client: InMemoryDataClient) -> None:
    user = await data_client.model("User").create(data={"email": "a@example.com"})

    post = await data_client.model("Post").create(
        data={"title": "Hi", "author": {"connect": {"id": user["id"]}}},
        include={"author": True},
    )

    assert post["author_id"] == user["id"]
    assert post["author"]["email"] == "a@example.com"


@pytest.mark.asyncio
async def test_unique_fields_are_enforced(data_client: InMemoryDataClient) -> None:
    await data_client.model("User").create(data={"email": "dup@example.com"})

    with pytest.raises(UniqueConstraintError) as excinfo:
        await data_client.model("User").create(data={"email": "dup@example.com"})

    assert excinfo.value.fields == ("email",)


@pytest.mark.asyncio
async def test_transaction_restores_snapshot_when_block_raises(
    data_client: InMemoryDataClient,
) -> None:
    await data_client.model("User").create(data={"email": "kept@example.com"})

    with pytest.raises(RuntimeError):
        async with data_client.transaction() as tx:
            assert tx.in_transaction
            await tx.model("User").create(data={"email": "lost@example.com"})
            raise RuntimeError("abort")

    assert [row["email"] for row in data_client.rows("User")] == ["kept@example.com"]


@pytest.mark.asyncio
async def test_select_projects_scalars_and_relations(data_client: InMemoryDataClient) -> None:
    created = await data_client.model("User").create(
        data={"email": "s@example.com", "posts": {"create": {"title": "T"}}}
    )

    found = await data_client.model("User").find_unique(
        where={"email": "s@example.com"},
        select={"id": True, "posts": {"select": {"title": True}}},
    )

    assert found == {"id": created["id"], "posts": [{"title": "T"}]}


@pytest.mark.asyncio
async def test_nested_update_operations(data_client: InMemoryDataClient) -> None:
    user = await data_client.model("User").create(
        data={
            "email": "n@example.com",
            "posts": {"create": [{"title": "keep"}, {"title": "drop"}]},
            "profile": {"create": {"bio": "old"}},
        },
        include={"posts": True},
    )
    drop_id = user["posts"][1]["id"]

    updated = await data_client.model("User").update(
        where={"id": user["id"]},
        data={
            "posts": {
                "update_many": {"where": {"title": "keep"}, "data": {"published": True}},
                "delete": {"id": drop_id},
            },
            "profile": {"update": {"bio": "new"}},
        },
        include={"posts": True, "profile": True},
    )

    assert [(p["title"], p["published"]) for p in updated["posts"]] == [("keep", True)]
    assert updated["profile"]["bio"] == "new"


@pytest.mark.asyncio
async def test_connect_or_create_links_existing_rows(data_client: InMemoryDataClient) -> None:
    await data_client.model("Tag").create(data={"name": "python"})
    post = await data_client.model("Post").create(data={"title": "T"})

    await data_client.model("Post").update(
        where={"id": post["id"]},
        data={
            "tags": {
                "connect_or_create": [
                    {"where": {"name": "python"}, "create": {"name": "python"}},
                    {"where": {"name": "rust"}, "create": {"name": "rust"}},
                ]
            }
        },
    )

    tags = data_client.rows("Tag")
    assert sorted(tag["name"] for tag in tags) == ["python", "rust"]
    assert all(tag["post_id"] == post["id"] for tag in tags)


@pytest.mark.asyncio
async def test_atomic_updates_and_autoincrement(data_client: InMemoryDataClient) -> None:
    first = await data_client.model("Setting").create(data={"key": "retries", "value": 1})
    second = await data_client.model("Setting").create(data={"key": "limit", "value": 10})

    bumped = await data_client.model("Setting").update(
        where={"id": first["id"]}, data={"value": {"increment": 2}}
    )

    assert (first["id"], second["id"]) == (1, 2)
    assert bumped["value"] == 3


@pytest.mark.asyncio
async def test_create_many_rejects_nested_writes(data_client: InMemoryDataClient) -> None:
    with pytest.raises(DataClientError):
        await data_client.model("Post").create_many(
            data=[{"title": "T", "comments": {"create": {"body": "b"}}}]
        )


@pytest.mark.asyncio
async def test_missing_target_raises_not_found(data_client: InMemoryDataClient) -> None:
    with pytest.raises(RecordNotFoundError):
        await data_client.model("Post").update(where={"id": "missing"}, data={"title": "x"})


@pytest.mark.asyncio
async def test_query_log_counts_delegate_calls(data_client: InMemoryDataClient) -> None:
    await data_client.model("Setting").create_many(data=[{"key": "a"}, {"key": "b"}])
    await data_client.model("Setting").find_many(where={"key": {"in": ["a", "b"]}})
    data_client.rows("Setting")

    assert data_client.queries.count == 2
    assert data_client.queries.reads() == 1
    assert data_client.queries.for_model("Setting") == ["create_many", "find_many"]

    data_client.queries.reset()
    assert data_client.queries.count == 0
