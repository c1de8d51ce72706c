"""End-to-end tests for the audited client over the in-memory data client."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Sequence

import pytest

from packages.audit_core import AuditActor, AuditContext, AuditContextProvider, define_entity
from packages.audit_core.domain import AuditRecord, EnricherConfig
from packages.audit_core.interfaces import DefaultWrite
from packages.audit_orm import AuditedClient
from packages.audit_orm.testing import InMemoryDataClient
from packages.audit_shared.errors import AuditWriteError, MissingEntityConfigError
from packages.audit_shared.logging import ContextFilter

Rows = Callable[..., list[dict[str, Any]]]


@pytest.mark.asyncio
async def test_create_is_recorded_with_actor_request_and_redaction(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    audit_rows: Rows,
) -> None:
    client = make_client()

    with provider.scope(audit_context):
        user = await client.model("User").create(
            data={"email": "ada@example.com", "name": "Ada", "password": "hunter2"}
        )

    (row,) = audit_rows()
    assert row["action"] == "create"
    assert (row["entity_type"], row["entity_id"]) == ("User", user["id"])
    assert (row["aggregate_type"], row["aggregate_id"]) == ("User", user["id"])
    assert (row["actor_type"], row["actor_id"]) == ("User", "actor-1")
    assert row["request_context"] == {"request_id": "req-1", "ip": "10.0.0.1"}
    assert row["before"] is None
    assert row["after"]["email"] == "ada@example.com"
    assert row["after"]["password"] == {"redacted": True, "had_value": True}
    assert user["password"] == "hunter2"


@pytest.mark.asyncio
async def test_update_records_changes_and_skips_noop_updates(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    user = await data_client.model("User").create(data={"email": "u@example.com", "name": "Old"})
    client = make_client()

    with provider.scope(audit_context):
        await client.model("User").update(where={"id": user["id"]}, data={"name": "New"})
        await client.model("User").update(where={"id": user["id"]}, data={"name": "New"})

    (row,) = audit_rows()
    assert row["action"] == "update"
    assert row["changes"] == {"name": {"old": "Old", "new": "New"}}
    assert row["before"]["name"] == "Old"
    assert row["after"]["name"] == "New"


@pytest.mark.asyncio
async def test_upsert_resolves_create_then_update(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    audit_rows: Rows,
) -> None:
    client = make_client()
    args = {"where": {"key": "theme"}, "create": {"key": "theme", "value": "light"}}

    with provider.scope(audit_context):
        await client.model("Setting").upsert(**args, update={"value": "dark"})
        await client.model("Setting").upsert(**args, update={"value": "dark"})

    assert [row["action"] for row in audit_rows()] == ["create", "update"]
    assert audit_rows()[1]["changes"] == {"value": {"old": "light", "new": "dark"}}
    assert audit_rows()[0]["entity_id"] == "1"


@pytest.mark.asyncio
async def test_delete_records_before_state_only(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    user = await data_client.model("User").create(data={"email": "d@example.com"})
    post = await data_client.model("Post").create(data={"title": "T", "author_id": user["id"]})
    client = make_client()

    with provider.scope(audit_context):
        await client.model("Post").delete(where={"id": post["id"]})

    rows = audit_rows("Post")
    assert [(r["aggregate_type"], r["aggregate_id"]) for r in rows] == [
        ("Post", post["id"]),
        ("User", user["id"]),
    ]
    assert all(r["action"] == "delete" and r["after"] is None for r in rows)
    assert all(r["before"]["title"] == "T" for r in rows)


@pytest.mark.asyncio
async def test_mutations_without_context_pass_through(
    make_client: Callable[..., AuditedClient],
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    user = await make_client().model("User").create(data={"email": "quiet@example.com"})

    assert data_client.rows("User")[0]["id"] == user["id"]
    assert audit_rows() == []


@pytest.mark.asyncio
async def test_audit_log_model_and_unconfigured_models_are_not_audited(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    entities: dict[str, Any],
    data_client: InMemoryDataClient,
) -> None:
    configured = {name: config for name, config in entities.items() if name != "Setting"}
    client = make_client(entities=configured)

    with provider.scope(audit_context):
        await client.model("Setting").create(data={"key": "untracked"})
        await client.model("AuditLog").create(
            data={"entity_type": "Manual", "entity_id": "1", "action": "create"}
        )

    assert [row["entity_type"] for row in data_client.rows("AuditLog")] == ["Manual"]
    assert data_client.rows("Setting")[0]["key"] == "untracked"


@pytest.mark.asyncio
async def test_batch_on_unconfigured_model_is_a_configuration_error(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    entities: dict[str, Any],
    data_client: InMemoryDataClient,
) -> None:
    configured = {name: config for name, config in entities.items() if name != "Setting"}
    client = make_client(entities=configured)

    with provider.scope(audit_context):
        with pytest.raises(MissingEntityConfigError) as excinfo:
            await client.model("Setting").create_many(data=[{"key": "a"}])

    assert excinfo.value.model == "Setting"
    assert excinfo.value.operation == "create_many"
    assert data_client.rows("Setting") == []


@pytest.mark.asyncio
async def test_batch_on_excluded_model_passes_through_without_configuration(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    entities: dict[str, Any],
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    configured = {name: config for name, config in entities.items() if name != "Setting"}
    client = make_client(entities=configured, exclude_models=("Setting",))

    with provider.scope(audit_context):
        await client.model("Setting").create_many(data=[{"key": "a"}, {"key": "b"}])

    assert [row["key"] for row in data_client.rows("Setting")] == ["a", "b"]
    assert audit_rows() == []


@pytest.mark.asyncio
async def test_excluded_models_are_skipped_even_when_configured(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    audit_rows: Rows,
) -> None:
    client = make_client(exclude_models=("Post",))

    with provider.scope(audit_context):
        user = await client.model("User").create(
            data={"email": "ex@example.com", "posts": {"create": [{"title": "hidden"}]}}
        )
        await client.model("Post").create(data={"title": "direct", "author_id": user["id"]})

    assert [row["entity_type"] for row in audit_rows()] == ["User"]


@pytest.mark.asyncio
@pytest.mark.parametrize(("draw", "expected"), [(0.9, 0), (0.1, 1)])
async def test_sampling_skips_operations_above_the_rate(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    audit_rows: Rows,
    draw: float,
    expected: int,
) -> None:
    client = make_client(sampling=0.5, random_source=lambda: draw)

    with provider.scope(audit_context):
        await client.model("Setting").create(data={"key": "sampled"})

    assert len(audit_rows()) == expected


@pytest.mark.asyncio
async def test_tag_based_sampling_overrides_global_rate(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    entities: dict[str, Any],
    audit_rows: Rows,
) -> None:
    tagged = {**entities, "Setting": define_entity(type="Setting", tags=["critical"])}
    client = make_client(
        entities=tagged,
        sampling=0.0,
        sampling_if=lambda model, tags: 1.0 if "critical" in tags else 0.0,
        random_source=lambda: 0.99,
    )

    with provider.scope(audit_context):
        await client.model("Setting").create(data={"key": "kept"})
        await client.model("Tag").create(data={"name": "dropped"})

    assert [row["entity_type"] for row in audit_rows()] == ["Setting"]


def _list_sink(sink: list[AuditRecord]) -> Any:
    async def writer(
        records: Sequence[AuditRecord], context: AuditContext, default_write: DefaultWrite
    ) -> None:
        sink.extend(records)

    return writer


@pytest.mark.asyncio
async def test_inner_transaction_defers_to_the_outermost_commit(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
) -> None:
    sink: list[AuditRecord] = []
    client = make_client(writer=_list_sink(sink), await_write=False)

    with provider.scope(audit_context):
        async with client.transaction() as outer:
            async with outer.transaction() as inner:
                await inner.model("User").create(data={"email": "in@example.com"})
            assert sink == []
            await outer.model("Tag").create(data={"name": "outer"})
            assert sink == []

    assert [record.entity_type for record in sink] == ["User", "Tag"]


@pytest.mark.asyncio
async def test_outer_rollback_discards_writes_of_committed_inner_transaction(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
) -> None:
    sink: list[AuditRecord] = []
    client = make_client(writer=_list_sink(sink), await_write=False)

    with provider.scope(audit_context):
        with pytest.raises(RuntimeError):
            async with client.transaction() as outer:
                async with outer.transaction() as inner:
                    await inner.model("User").create(data={"email": "gone@example.com"})
                raise RuntimeError("abort")
    await client.drain()

    assert data_client.rows("User") == []
    assert sink == []


@pytest.mark.asyncio
async def test_transaction_rollback_discards_deferred_writes(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    client = make_client(await_write=False)

    with provider.scope(audit_context):
        with pytest.raises(RuntimeError):
            async with client.transaction() as tx:
                await tx.model("User").create(data={"email": "gone@example.com"})
                raise RuntimeError("abort")
    await client.drain()

    assert data_client.rows("User") == []
    assert audit_rows() == []


@pytest.mark.asyncio
async def test_deferred_writes_flush_in_order_after_commit(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    audit_rows: Rows,
) -> None:
    client = make_client(await_write=False)

    with provider.scope(audit_context):
        async with client.transaction() as tx:
            await tx.model("Setting").create(data={"key": "first"})
            await tx.model("Setting").create(data={"key": "second"})
            assert audit_rows() == []

    assert [row["after"]["key"] for row in audit_rows()] == ["first", "second"]


@pytest.mark.asyncio
async def test_awaited_writes_inside_transaction_roll_back_together(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    client = make_client()

    with provider.scope(audit_context):
        with pytest.raises(RuntimeError):
            async with client.transaction() as tx:
                await tx.model("Setting").create(data={"key": "rolled-back"})
                assert len(audit_rows()) == 1
                raise RuntimeError("abort")

    assert data_client.rows("Setting") == []
    assert audit_rows() == []


@pytest.mark.asyncio
async def test_fire_and_forget_writes_land_after_drain(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    audit_rows: Rows,
) -> None:
    client = make_client(await_write=False)

    with provider.scope(audit_context):
        await client.model("Setting").create(data={"key": "async"})
    await client.drain()

    assert [row["after"]["key"] for row in audit_rows()] == ["async"]


async def _failing_writer(
    records: Sequence[AuditRecord], context: AuditContext, default_write: DefaultWrite
) -> None:
    raise ConnectionError("audit sink down")


@pytest.mark.asyncio
async def test_failed_awaited_write_under_throw_rolls_back_the_mutation(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
) -> None:
    client = make_client(writer=_failing_writer, error_strategy="throw")

    with provider.scope(audit_context):
        with pytest.raises(AuditWriteError):
            await client.model("User").create(data={"email": "atomic@example.com"})

    assert data_client.rows("User") == []


@pytest.mark.asyncio
async def test_failed_write_under_default_strategy_keeps_the_mutation(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    failures: list[tuple[str, str]] = []
    client = make_client(
        writer=_failing_writer,
        error_handler=lambda error, operation: failures.append((str(error), operation)),
    )

    with provider.scope(audit_context):
        await client.model("User").create(data={"email": "kept@example.com"})

    assert len(data_client.rows("User")) == 1
    assert audit_rows() == []
    assert failures == [("audit sink down", "audit log write")]


@pytest.mark.asyncio
async def test_writes_made_by_a_custom_writer_are_not_audited(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    holder: dict[str, AuditedClient] = {}

    async def writer(
        records: Sequence[AuditRecord], context: AuditContext, default_write: DefaultWrite
    ) -> None:
        await holder["client"].model("Setting").create(data={"key": f"batch-{len(records)}"})
        await default_write(records)

    holder["client"] = make_client(writer=writer)

    with provider.scope(audit_context):
        await holder["client"].model("User").create(data={"email": "w@example.com"})

    assert [row["entity_type"] for row in audit_rows()] == ["User"]
    assert [row["key"] for row in data_client.rows("Setting")] == ["batch-1"]


@pytest.mark.asyncio
async def test_actor_and_entity_contexts_are_enriched(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    entities: dict[str, Any],
    audit_rows: Rows,
) -> None:
    def entity_enricher(items: list[Any], client: Any, meta: Any) -> list[Any]:
        return [{"label": item["key"].upper()} for item in items]

    client = make_client(
        entities={
            **entities,
            "Setting": define_entity(
                type="Setting", entity_context=EnricherConfig(enricher=entity_enricher)
            ),
        },
        actor_context=EnricherConfig(enricher=lambda actor, client, meta: {"name": actor.name}),
    )

    with provider.scope(audit_context):
        await client.model("Setting").create(data={"key": "mode"})

    (row,) = audit_rows()
    assert row["actor_context"] == {"name": "Ada"}
    assert row["entity_context"] == {"label": "MODE"}


@pytest.mark.asyncio
async def test_concurrent_actors_are_attributed_separately(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_rows: Rows,
) -> None:
    client = make_client()

    async def act(actor_id: str) -> None:
        context = AuditContext(actor=AuditActor(category="user", type="User", id=actor_id))
        for index in range(3):
            await provider.run_async(
                context,
                lambda: client.model("Setting").create(data={"key": f"{actor_id}-{index}"}),
            )
            await asyncio.sleep(0)

    await asyncio.gather(act("alice"), act("bob"))

    rows = audit_rows()
    assert len(rows) == 6
    assert all(row["after"]["key"].startswith(row["actor_id"]) for row in rows)


@pytest.mark.asyncio
async def test_reads_pass_through_unaudited(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    data_client: InMemoryDataClient,
    audit_rows: Rows,
) -> None:
    await data_client.model("Setting").create(data={"key": "read-me"})
    client = make_client()

    with provider.scope(audit_context):
        found = await client.model("Setting").find_unique(where={"key": "read-me"})
        listed = await client.model("Setting").find_many()

    assert found["key"] == "read-me"
    assert len(listed) == 1
    assert audit_rows() == []


@pytest.mark.asyncio
async def test_pipeline_logs_carry_stage_and_write_strategy(
    make_client: Callable[..., AuditedClient],
    provider: AuditContextProvider,
    audit_context: AuditContext,
    caplog: pytest.LogCaptureFixture,
) -> None:
    client = make_client()
    caplog.handler.addFilter(ContextFilter())

    with caplog.at_level(logging.DEBUG, logger="packages.audit_core.write_strategies"):
        with provider.scope(audit_context):
            await client.model("Tag").create(data={"name": "logged"})

    (record,) = [r for r in caplog.records if r.getMessage().startswith("writing")]
    assert getattr(record, "stage") == "write"
    assert getattr(record, "write_strategy") == "immediate"
    assert getattr(record, "audit_model") == "Tag"
    assert getattr(record, "audit_operation") == "create"
