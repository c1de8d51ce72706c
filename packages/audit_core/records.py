"""Audit record construction.

One entity change becomes one ``AuditRecord`` per resolved aggregate root.
Snapshots are serialized, optionally stripped of loaded relations, diffed on
raw values, and only then redacted, so redaction never hides a real change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Iterable, Mapping, Sequence

from packages.audit_core.aggregate import resolve_aggregate_roots, resolve_entity_id
from packages.audit_core.diff import calculate_changes
from packages.audit_core.domain import (
    AuditAction,
    AuditContext,
    AuditRecord,
    EnrichmentMeta,
    EntityConfig,
    Operation,
    ResolvedAggregate,
)
from packages.audit_core.enrichment import BATCH_TIMEOUT_MS, batch_enrich_aggregate_contexts
from packages.audit_core.redaction import Redactor
from packages.audit_core.serialization import snapshot, strip_relations

logger = logging.getLogger(__name__)


def resolve_action(operation: Operation | str, before: Mapping[str, Any] | None) -> AuditAction:
    """Map an intercepted operation onto the action stored on records.

    Upsert resolves to ``update`` when a before record existed, else
    ``create``. Batch operations map onto their single-record action.
    """
    op = Operation(operation)
    if op is Operation.UPSERT:
        return AuditAction.UPDATE if before is not None else AuditAction.CREATE
    return AuditAction(op.singular.value)


def resolve_states(
    action: AuditAction,
    entity: Mapping[str, Any],
    before: Mapping[str, Any] | None,
    *,
    entity_is_snapshot: bool = True,
) -> tuple[Mapping[str, Any] | None, Mapping[str, Any] | None]:
    """Return ``(before, after)`` for a resolved action.

    Creates never carry a before snapshot and deletes never carry an after
    snapshot. A delete without a pre-fetched record uses the deleted row
    returned by the mutation as its before state, unless ``entity`` is only
    an identity, in which case both states stay ``None``.
    """
    if not entity_is_snapshot:
        return before, None
    if action is AuditAction.CREATE:
        return None, entity
    if action is AuditAction.DELETE:
        return (before if before is not None else entity), None
    return before, entity


@dataclass(frozen=True)
class BatchItem:
    """One entity change inside a batch operation."""

    entity: Mapping[str, Any]
    action: AuditAction
    before: Mapping[str, Any] | None = None
    entity_context: Any = None


@dataclass(frozen=True)
class _Prepared:
    entity: Mapping[str, Any]
    entity_id: str
    roots: list[ResolvedAggregate]
    action: AuditAction
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    changes: dict[str, Any] | None
    entity_context: Any


class AuditRecordBuilder:
    """Build audit records for single entities under shared settings."""

    def __init__(
        self,
        *,
        exclude_fields: Iterable[str] = (),
        redactor: Redactor | None = None,
        include_relations: bool = False,
        aggregate_timeout_ms: int = BATCH_TIMEOUT_MS,
    ) -> None:
        self._exclude_fields = tuple(exclude_fields)
        self._redactor = redactor
        self._include_relations = include_relations
        self._aggregate_timeout_ms = aggregate_timeout_ms

    def excluded_fields_for(self, entity_config: EntityConfig) -> tuple[str, ...]:
        """Return the exclude list in effect; a per-entity list replaces the global one."""
        if entity_config.exclude_fields is not None:
            return entity_config.exclude_fields
        return self._exclude_fields

    def includes_relations_for(self, entity_config: EntityConfig) -> bool:
        """Return whether loaded relations stay in snapshots for this entity."""
        if entity_config.include_relations is not None:
            return entity_config.include_relations
        return self._include_relations

    async def build(
        self,
        *,
        entity: Mapping[str, Any],
        action: AuditAction,
        before: Mapping[str, Any] | None,
        context: AuditContext,
        entity_config: EntityConfig | None,
        active_client: Any,
        enrichment_client: Any,
        actor_context: Any = None,
        entity_context: Any = None,
        entity_is_snapshot: bool = True,
    ) -> list[AuditRecord]:
        """Build one record per aggregate root, or none when nothing is auditable.

        Returns an empty list when the model has no configuration, the entity
        id cannot be resolved, no aggregate root resolves, or an update's only
        differences are in excluded fields. Pass ``entity_is_snapshot=False``
        when ``entity`` only identifies the record; no state is then stored.
        """
        if entity_config is None:
            return []
        prepared = await self._prepare(
            entity_config,
            entity,
            action,
            before,
            entity_context,
            active_client,
            entity_is_snapshot=entity_is_snapshot,
        )
        if prepared is None:
            return []

        cache: dict[str, Any] = {}
        contexts: dict[str, Any] = {}
        for root in prepared.roots:
            contexts[root.cache_key] = await self._aggregate_context(
                entity, entity_config, root, enrichment_client, cache
            )
        return self._emit(prepared, entity_config, context, actor_context, contexts)

    async def build_batch(
        self,
        *,
        items: Sequence[BatchItem],
        context: AuditContext,
        entity_config: EntityConfig,
        active_client: Any,
        enrichment_client: Any,
        actor_context: Any = None,
    ) -> list[AuditRecord]:
        """Build records for many entities of one model.

        Aggregate contexts are enriched with one batch call per aggregate
        type, so the number of enrichment round trips does not grow with the
        number of entities.
        """
        prepared: list[_Prepared] = []
        for item in items:
            ready = await self._prepare(
                entity_config,
                item.entity,
                item.action,
                item.before,
                item.entity_context,
                active_client,
            )
            if ready is not None:
                prepared.append(ready)

        by_type: dict[str, list[tuple[int, ResolvedAggregate]]] = {}
        for index, ready in enumerate(prepared):
            for root in ready.roots:
                if entity_config.aggregate_enricher(root.type) is not None:
                    by_type.setdefault(root.type, []).append((index, root))

        per_entity: list[dict[str, Any]] = [{} for _ in prepared]
        for aggregate_type, members in by_type.items():
            meta = EnrichmentMeta(
                aggregate_type=aggregate_type,
                aggregate_category=members[0][1].category,
            )
            contexts = await batch_enrich_aggregate_contexts(
                [prepared[index].entity for index, _ in members],
                entity_config,
                enrichment_client,
                meta,
                timeout_ms=self._aggregate_timeout_ms,
            )
            for (index, root), value in zip(members, contexts):
                per_entity[index][root.cache_key] = value

        records: list[AuditRecord] = []
        for ready, contexts_for_entity in zip(prepared, per_entity):
            records.extend(
                self._emit(ready, entity_config, context, actor_context, contexts_for_entity)
            )
        return records

    async def _prepare(
        self,
        entity_config: EntityConfig,
        entity: Mapping[str, Any],
        action: AuditAction,
        before: Mapping[str, Any] | None,
        entity_context: Any,
        client: Any,
        *,
        entity_is_snapshot: bool = True,
    ) -> _Prepared | None:
        entity_id = await resolve_entity_id(entity_config, entity, client)
        if entity_id is None:
            return None

        roots = await resolve_aggregate_roots(entity_config, entity, client, entity_id=entity_id)
        if not roots:
            logger.debug("no aggregate roots resolved for %s %s", entity_config.type, entity_id)
            return None

        raw_before, raw_after = resolve_states(
            action, entity, before, entity_is_snapshot=entity_is_snapshot
        )
        before_state = snapshot(raw_before)
        after_state = snapshot(raw_after)
        if not self.includes_relations_for(entity_config):
            before_state = strip_relations(before_state)
            after_state = strip_relations(after_state)

        changes = None
        if action is AuditAction.UPDATE:
            changes = calculate_changes(
                before_state, after_state, self.excluded_fields_for(entity_config)
            )
            if before_state is not None and changes is None:
                logger.debug(
                    "skipping update audit for %s %s: no auditable changes",
                    entity_config.type,
                    entity_id,
                )
                return None

        if self._redactor is not None:
            before_state = self._redactor.redact(before_state)
            after_state = self._redactor.redact(after_state)
            changes = self._redactor.redact(changes)

        return _Prepared(
            entity=entity,
            entity_id=entity_id,
            roots=roots,
            action=action,
            before=before_state,
            after=after_state,
            changes=changes,
            entity_context=entity_context,
        )

    def _emit(
        self,
        prepared: _Prepared,
        entity_config: EntityConfig,
        context: AuditContext,
        actor_context: Any,
        aggregate_contexts: Mapping[str, Any],
    ) -> list[AuditRecord]:
        created_at = datetime.now(UTC)
        request_context = dict(context.request) if context.request else None
        return [
            AuditRecord(
                actor_category=context.actor.category,
                actor_type=context.actor.type,
                actor_id=context.actor.id,
                actor_context=actor_context,
                entity_category=entity_config.category,
                entity_type=entity_config.type,
                entity_id=prepared.entity_id,
                entity_context=prepared.entity_context,
                aggregate_category=root.category,
                aggregate_type=root.type,
                aggregate_id=root.id,
                aggregate_context=aggregate_contexts.get(root.cache_key),
                action=prepared.action,
                before=prepared.before,
                after=prepared.after,
                changes=prepared.changes,
                request_context=request_context,
                created_at=created_at,
            )
            for root in prepared.roots
        ]

    async def _aggregate_context(
        self,
        entity: Mapping[str, Any],
        entity_config: EntityConfig,
        root: ResolvedAggregate,
        client: Any,
        cache: dict[str, Any],
    ) -> Any:
        if entity_config.aggregate_enricher(root.type) is None:
            return None
        if root.cache_key in cache:
            return cache[root.cache_key]
        meta = EnrichmentMeta(
            aggregate_type=root.type,
            aggregate_category=root.category,
            aggregate_id=root.id,
        )
        contexts = await batch_enrich_aggregate_contexts(
            [entity],
            entity_config,
            client,
            meta,
            timeout_ms=self._aggregate_timeout_ms,
        )
        cache[root.cache_key] = contexts[0]
        return contexts[0]
