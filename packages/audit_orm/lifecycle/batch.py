"""Stages of the batch lifecycle for create_many, update_many and delete_many.

Each batch run issues a fixed number of reads and enrichment calls
regardless of how many rows it touches:

- create_many: ids are pre-assigned, records are built from the input rows;
  rows whose id cannot be generated client-side are read back once by their
  unique fields.
- update_many: one read before, one read after by id, aligned by id.
- delete_many: one read before; records carry no after state.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from typing import Any, Mapping

from packages.audit_core.domain import AuditAction, EnrichmentMeta, Operation
from packages.audit_core.enrichment import (
    batch_enrich_entity_contexts,
    enrich_actor_context,
)
from packages.audit_core.records import BatchItem
from packages.audit_orm.ids import ensure_ids
from packages.audit_orm.lifecycle.state import LifecycleServices, OperationState
from packages.audit_orm.where import matches

logger = logging.getLogger(__name__)


def _unique_where(
    services: LifecycleServices, model: str, row: Mapping[str, Any]
) -> dict[str, Any] | None:
    for constraint in services.schema.get_unique_constraints(model):
        if all(row.get(name) is not None for name in constraint.fields):
            return {name: row[name] for name in constraint.fields}
    return None


async def prepare_ids(state: OperationState, services: LifecycleServices) -> OperationState:
    """Copy the input rows and fill in client-generated ids."""
    args = copy.deepcopy(dict(state.args))
    rows = list(args.get("data") or [])
    ensure_ids(services.schema, state.model, rows, id_key=services.options.id_key)
    args["data"] = rows
    return replace(state, args=args)


async def fetch_batch_before(
    state: OperationState, services: LifecycleServices
) -> OperationState:
    """Read every record the batch filter matches, in one query."""
    befores = await state.client.model(state.model).find_many(where=state.args.get("where"))
    return replace(state, befores=tuple(befores))


async def execute_batch(state: OperationState, services: LifecycleServices) -> OperationState:
    """Run the batch data-client call."""
    delegate = state.client.model(state.model)
    result = await getattr(delegate, state.operation.value)(**dict(state.args))
    return replace(state, raw_result=result, result=result)


async def collect_created(state: OperationState, services: LifecycleServices) -> OperationState:
    """Pair each inserted row with its after state."""
    id_key = services.options.id_key
    rows = list(state.args.get("data") or [])
    known = [row for row in rows if row.get(id_key) is not None]
    unknown = [row for row in rows if row.get(id_key) is None]

    entities: list[Mapping[str, Any]] = list(known)
    if unknown:
        wheres = []
        for row in unknown:
            where = _unique_where(services, state.model, row)
            if where is None:
                logger.warning(
                    "cannot identify a %s row without id or unique fields; not audited",
                    state.model,
                )
                continue
            wheres.append(where)
        if wheres:
            created = await state.client.model(state.model).find_many(where={"OR": wheres})
            for where in wheres:
                match = next((rec for rec in created if matches(rec, where)), None)
                if match is not None:
                    entities.append(match)

    items = tuple(BatchItem(entity=entity, action=AuditAction.CREATE) for entity in entities)
    return replace(state, items=items)


async def collect_updated(state: OperationState, services: LifecycleServices) -> OperationState:
    """Re-read updated rows by id and pair them with their before state."""
    id_key = services.options.id_key
    ids = [before[id_key] for before in state.befores if before.get(id_key) is not None]
    if not ids:
        return replace(state, items=())
    afters = await state.client.model(state.model).find_many(where={id_key: {"in": ids}})
    by_id = {after[id_key]: after for after in afters}
    items = []
    for before in state.befores:
        after = by_id.get(before.get(id_key))
        if after is None:
            logger.debug(
                "updated %s %s not found after the write", state.model, before.get(id_key)
            )
            continue
        items.append(BatchItem(entity=after, action=AuditAction.UPDATE, before=before))
    return replace(state, items=tuple(items))


async def collect_deleted(state: OperationState, services: LifecycleServices) -> OperationState:
    """Turn the pre-read rows into delete items."""
    items = tuple(
        BatchItem(entity=before, action=AuditAction.DELETE, before=before)
        for before in state.befores
    )
    return replace(state, items=items)


async def enrich_batch(state: OperationState, services: LifecycleServices) -> OperationState:
    """Enrich the actor once and every entity in one batch call."""
    options = services.options
    config = state.entity_config
    actor_context = await enrich_actor_context(
        state.context,
        options.actor_context,
        services.base_client,
        timeout_ms=options.enrichment_timeout_ms,
    )
    if config is None or not state.items:
        return replace(state, actor_context=actor_context)

    meta = EnrichmentMeta(aggregate_type=config.type, aggregate_category=config.category)
    contexts = await batch_enrich_entity_contexts(
        [item.entity for item in state.items],
        config,
        services.base_client,
        meta,
        timeout_ms=options.batch_enrichment_timeout_ms,
    )
    items = tuple(
        replace(item, entity_context=entity_context)
        for item, entity_context in zip(state.items, contexts)
    )
    return replace(state, actor_context=actor_context, items=items)


async def build_batch(state: OperationState, services: LifecycleServices) -> OperationState:
    """Build records for every batch item."""
    if state.entity_config is None or not state.items:
        return replace(state, records=())
    records = await services.record_builder.build_batch(
        items=state.items,
        context=state.context,
        entity_config=state.entity_config,
        active_client=state.client,
        enrichment_client=services.base_client,
        actor_context=state.actor_context,
    )
    logger.debug(
        "%s on %s produced %d audit records",
        Operation(state.operation).value,
        state.model,
        len(records),
    )
    return replace(state, records=tuple(records))
