"""Stages of the single-record lifecycle: fetch_before, execute, enrich, build, write."""

from __future__ import annotations

import copy
import logging
from dataclasses import replace
from typing import Any

from packages.audit_core.domain import EnrichmentMeta, Operation
from packages.audit_core.enrichment import (
    batch_enrich_entity_contexts,
    enrich_actor_context,
)
from packages.audit_core.records import resolve_action
from packages.audit_orm.ids import assign_nested_ids
from packages.audit_orm.include import build_include, merge_include, prune_result
from packages.audit_orm.intents import detect_write_intents
from packages.audit_orm.lifecycle.state import LifecycleServices, OperationState
from packages.audit_orm.prefetch import PreFetchResults

logger = logging.getLogger(__name__)


def _write_payload(state: OperationState, args: dict[str, Any]) -> tuple[Any, bool]:
    """Return the payload carrying nested writes and whether it inserts."""
    op = state.operation
    if op is Operation.CREATE:
        return args.get("data"), True
    if op is Operation.UPDATE:
        return args.get("data"), False
    if op is Operation.UPSERT:
        if state.before is None:
            return args.get("create"), True
        return args.get("update"), False
    return None, False


async def fetch_before(state: OperationState, services: LifecycleServices) -> OperationState:
    """Read the top-level before state, then pre-fetch nested locations."""
    before = None
    if state.operation in (Operation.UPDATE, Operation.UPSERT, Operation.DELETE):
        try:
            before = await state.client.model(state.model).find_unique(
                where=state.args["where"]
            )
        except Exception:
            logger.warning(
                "before-state lookup failed for %s; continuing without it",
                state.model,
                exc_info=True,
            )
    state = replace(state, before=before)

    args = copy.deepcopy(dict(state.args))
    payload, creating = _write_payload(state, args)
    intents = detect_write_intents(services.schema, state.model, payload)
    if not intents:
        return replace(state, args=args, creating=creating, prefetch=PreFetchResults())

    assign_nested_ids(services.schema, intents, id_key=services.options.id_key)
    prefetch = await services.prefetcher.prefetch(
        state.client,
        state.model,
        intents,
        parent=None if creating else before,
        creating=creating,
    )
    return replace(
        state, args=args, creating=creating, intents=intents, prefetch=prefetch
    )


async def execute(state: OperationState, services: LifecycleServices) -> OperationState:
    """Run the data-client call with nested relations included in the result."""
    args = dict(state.args)
    caller_include = args.get("include")
    injected = None
    if state.intents and "select" not in args:
        injected = build_include(state.intents)
        args["include"] = merge_include(caller_include, injected)

    delegate = state.client.model(state.model)
    raw_result = await getattr(delegate, state.operation.value)(**args)
    result = raw_result
    if injected:
        result = prune_result(raw_result, caller_include, injected)
    return replace(
        state,
        caller_include=caller_include,
        injected_include=injected,
        raw_result=raw_result,
        result=result,
    )


async def enrich(state: OperationState, services: LifecycleServices) -> OperationState:
    """Enrich actor and entity contexts against the base client."""
    options = services.options
    actor_context = await enrich_actor_context(
        state.context,
        options.actor_context,
        services.base_client,
        timeout_ms=options.enrichment_timeout_ms,
    )
    entity_context = None
    config = state.entity_config
    if config is not None and config.entity_enricher() is not None and state.result is not None:
        meta = EnrichmentMeta(aggregate_type=config.type, aggregate_category=config.category)
        (entity_context,) = await batch_enrich_entity_contexts(
            [state.result],
            config,
            services.base_client,
            meta,
            timeout_ms=options.enrichment_timeout_ms,
        )
    return replace(state, actor_context=actor_context, entity_context=entity_context)


async def build(state: OperationState, services: LifecycleServices) -> OperationState:
    """Build the top-level record and every nested record."""
    builder = services.record_builder
    records = []
    if state.result is not None:
        records.extend(
            await builder.build(
                entity=state.result,
                action=resolve_action(state.operation, state.before),
                before=state.before,
                context=state.context,
                entity_config=state.entity_config,
                active_client=state.client,
                enrichment_client=services.base_client,
                actor_context=state.actor_context,
                entity_context=state.entity_context,
            )
        )

    changes = await services.nested_builder.collect(
        client=state.client,
        model=state.model,
        intents=state.intents,
        result=state.raw_result,
        prefetch=state.prefetch or PreFetchResults(),
    )
    for change in changes:
        if services.options.is_excluded(change.model):
            logger.debug("nested %s is excluded from auditing; skipping", change.model)
            continue
        config = services.options.entity_config(change.model)
        if config is None:
            logger.debug("no entity configuration for nested %s; skipping", change.model)
            continue
        entity_context = None
        if config.entity_enricher() is not None:
            meta = EnrichmentMeta(aggregate_type=config.type, aggregate_category=config.category)
            (entity_context,) = await batch_enrich_entity_contexts(
                [change.entity],
                config,
                services.base_client,
                meta,
                timeout_ms=services.options.enrichment_timeout_ms,
            )
        records.extend(
            await builder.build(
                entity=change.entity,
                action=change.action,
                before=change.before,
                context=state.context,
                entity_config=config,
                active_client=state.client,
                enrichment_client=services.base_client,
                actor_context=state.actor_context,
                entity_context=entity_context,
                entity_is_snapshot=change.entity_is_snapshot,
            )
        )
    return replace(state, records=tuple(records))


async def write(state: OperationState, services: LifecycleServices) -> OperationState:
    """Hand finished records to the write strategy coordinator."""
    guarded = replace(state.context, processing_audit_log=True)
    with services.provider.scope(guarded):
        write_result = await services.coordinator.write(
            state.records, guarded, model=state.model, tags=state.tags
        )
    return replace(state, write_result=write_result)
