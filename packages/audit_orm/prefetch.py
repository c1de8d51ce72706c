"""Pre-mutation lookups for nested writes.

Before a mutation runs, the coordinator reads the current state of every
nested location whose before-state the mutation would destroy or whose
resulting action depends on existence:

- ``upsert`` and ``connect_or_create`` are always looked up;
- ``update``/``update_many`` and ``delete``/``delete_many`` are looked up when
  fetch-before is enabled for the related model;
- ``create``, ``create_many`` and ``connect`` are never looked up.

Descent follows each intent's resolved branch, so a nested upsert found to
exist only explores its ``update`` payload. A lookup failure is logged and
degrades to "no before state"; it never fails the mutation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from packages.audit_orm.intents import NestedOperation, WriteIntent
from packages.audit_orm.schema import FieldSchema, SchemaMetadata
from packages.audit_orm.where import matches, plan_lookup, scoped

logger = logging.getLogger(__name__)

DEFAULT_SLOT = "__default__"

FetchBeforePolicy = Callable[[str, str], bool]


@dataclass(frozen=True)
class Resolution:
    """Outcome of the lookup for one intent."""

    records: tuple[dict[str, Any], ...] = ()
    looked_up: bool = True

    @property
    def existed(self) -> bool:
        """Return whether the lookup found at least one record."""
        return bool(self.records)

    @property
    def record(self) -> dict[str, Any] | None:
        """Return the first record found, or ``None``."""
        return self.records[0] if self.records else None


class PreFetchResults:
    """Before-state captured for one top-level operation.

    Records are indexed two ways: by relation path and entity id (with a
    ``"__default__"`` slot for records without an id), and by intent
    location for exact per-intent resolution.
    """

    def __init__(self, *, id_key: str = "id") -> None:
        self._id_key = id_key
        self._paths: dict[str, dict[str, dict[str, Any] | None]] = {}
        self._resolutions: dict[str, Resolution] = {}
        self._baselines: dict[str, frozenset[str]] = {}

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, path: object) -> bool:
        return path in self._paths

    @property
    def paths(self) -> tuple[str, ...]:
        """Return every path that has at least one stored result."""
        return tuple(self._paths)

    def store(self, intent: WriteIntent, resolution: Resolution) -> None:
        """Record the lookup outcome for ``intent``."""
        self._resolutions[intent.location] = resolution
        slots = self._paths.setdefault(intent.path, {})
        if not resolution.records:
            slots.setdefault(DEFAULT_SLOT, None)
            return
        for record in resolution.records:
            entity_id = record.get(self._id_key)
            key = DEFAULT_SLOT if entity_id is None else str(entity_id)
            slots[key] = record

    def get(self, path: str, entity_id: str | None = None) -> dict[str, Any] | None:
        """Return the before record at ``path`` for ``entity_id``.

        Falls back to the ``"__default__"`` slot when the id is unknown.
        """
        slots = self._paths.get(path)
        if not slots:
            return None
        if entity_id is not None and entity_id in slots:
            return slots[entity_id]
        return slots.get(DEFAULT_SLOT)

    def resolution(self, intent: WriteIntent) -> Resolution | None:
        """Return the stored outcome for ``intent``, if it was looked up."""
        return self._resolutions.get(intent.location)

    def set_baseline(self, scope: str, field_name: str, ids: frozenset[str]) -> None:
        """Remember which related ids existed under a parent before the write."""
        self._baselines[f"{scope}|{field_name}"] = ids

    def baseline(self, scope: str, field_name: str) -> frozenset[str]:
        """Return ids that existed under a parent relation before the write."""
        return self._baselines.get(f"{scope}|{field_name}", frozenset())


def relation_scope(
    schema: SchemaMetadata,
    parent_model: str,
    relation: FieldSchema,
    parent: Mapping[str, Any] | None,
) -> dict[str, Any] | None:
    """Return the filter selecting records related to ``parent`` via ``relation``.

    Returns ``None`` when the parent is unknown or the foreign key cannot be
    resolved, and an empty dict when the parent's foreign key is unset.
    """
    if parent is None:
        return None
    try:
        owning, _ = schema.foreign_key_side(parent_model, relation.name)
    except (KeyError, ValueError):
        logger.debug("cannot resolve foreign key for %s.%s", parent_model, relation.name)
        return None
    if owning is relation:
        pairs = zip(relation.relation_references, relation.relation_fields)
        where = {ref: parent.get(fk) for ref, fk in pairs}
        if any(value is None for value in where.values()):
            return {}
        return where
    pairs = zip(owning.relation_fields, owning.relation_references)
    where = {fk: parent.get(ref) for fk, ref in pairs}
    if any(value is None for value in where.values()):
        return None
    return where


class PreFetchCoordinator:
    """Plan and run the lookups for a write-intent tree."""

    def __init__(
        self,
        schema: SchemaMetadata,
        *,
        fetch_before: FetchBeforePolicy,
        id_key: str = "id",
    ) -> None:
        self._schema = schema
        self._fetch_before = fetch_before
        self._id_key = id_key

    async def prefetch(
        self,
        client: Any,
        model: str,
        intents: tuple[WriteIntent, ...],
        *,
        parent: Mapping[str, Any] | None,
        creating: bool,
    ) -> PreFetchResults:
        """Return the before-state for every nested location that needs one."""
        results = PreFetchResults(id_key=self._id_key)
        await self._visit(client, model, intents, parent, creating, results)
        if len(results):
            logger.debug("pre-fetched %d nested paths for %s", len(results), model)
        return results

    def needs_lookup(self, intent: WriteIntent, *, creating: bool) -> bool:
        """Return whether ``intent`` requires a before lookup."""
        op = intent.operation
        if op is NestedOperation.CONNECT_OR_CREATE:
            return True
        if creating:
            return False
        if op is NestedOperation.UPSERT:
            return True
        if op in (NestedOperation.UPDATE, NestedOperation.UPDATE_MANY):
            return self._fetch_before(intent.model, "update")
        if op in (NestedOperation.DELETE, NestedOperation.DELETE_MANY):
            return self._fetch_before(intent.model, "delete")
        return False

    async def _visit(
        self,
        client: Any,
        parent_model: str,
        intents: tuple[WriteIntent, ...],
        parent: Mapping[str, Any] | None,
        creating: bool,
        results: PreFetchResults,
    ) -> None:
        if not creating:
            await self._capture_baselines(client, parent_model, intents, parent, results)
        for intent in intents:
            resolution: Resolution | None = None
            if self.needs_lookup(intent, creating=creating):
                resolution = await self._resolve(client, intent, parent)
                results.store(intent, resolution)
            branch = intent.branch_for(resolution.existed if resolution else False)
            children = intent.children_for(branch)
            if not children:
                continue
            if branch == "update":
                next_parent = resolution.record if resolution else None
                await self._visit(client, intent.model, children, next_parent, False, results)
            else:
                await self._visit(client, intent.model, children, None, True, results)

    async def _resolve(
        self, client: Any, intent: WriteIntent, parent: Mapping[str, Any] | None
    ) -> Resolution:
        try:
            records = await self._lookup(client, intent, parent)
        except Exception:
            logger.warning(
                "pre-fetch failed for %s (%s); continuing without before state",
                intent.path,
                intent.operation.value,
                exc_info=True,
            )
            return Resolution(looked_up=False)
        if records is None:
            logger.debug("skipping pre-fetch for %s: parent record unknown", intent.path)
            return Resolution(looked_up=False)
        return Resolution(records=tuple(records))

    async def _lookup(
        self, client: Any, intent: WriteIntent, parent: Mapping[str, Any] | None
    ) -> list[dict[str, Any]] | None:
        delegate = client.model(intent.model)
        op = intent.operation
        where = dict(intent.where or {})

        if op is NestedOperation.CONNECT_OR_CREATE:
            return await self._find(delegate, intent.model, where)

        scope = relation_scope(self._schema, intent.parent_model, intent.relation, parent)
        if not intent.is_list:
            if scope is None:
                return None
            if not scope:
                return []
            found = await delegate.find_first(where=scoped(where or None, scope))
            return [found] if found is not None else []

        single = op in (NestedOperation.UPDATE, NestedOperation.UPSERT, NestedOperation.DELETE)
        if scope is None:
            plan = plan_lookup(self._schema, intent.model, where)
            if not plan.is_point:
                return None
            return await self._find(delegate, intent.model, where)
        if single:
            plan = plan_lookup(self._schema, intent.model, where)
            if plan.is_point:
                found = await delegate.find_unique(where=plan.where)
                if found is None or not matches(found, scope):
                    return []
                return [found]
            found = await delegate.find_first(where=scoped(where, scope))
            return [found] if found is not None else []
        return list(await delegate.find_many(where=scoped(where, scope)))

    async def _find(
        self, delegate: Any, model: str, where: Mapping[str, Any]
    ) -> list[dict[str, Any]]:
        plan = plan_lookup(self._schema, model, where)
        if plan.is_point:
            found = await delegate.find_unique(where=plan.where)
        else:
            found = await delegate.find_first(where=plan.where)
        return [found] if found is not None else []

    async def _capture_baselines(
        self,
        client: Any,
        parent_model: str,
        intents: tuple[WriteIntent, ...],
        parent: Mapping[str, Any] | None,
        results: PreFetchResults,
    ) -> None:
        """Snapshot existing related ids where created rows carry no id."""
        seen: set[str] = set()
        for intent in intents:
            if not intent.is_list or intent.field_name in seen:
                continue
            create = intent.create
            if create is None or create.get(self._id_key) is not None:
                continue
            seen.add(intent.field_name)
            scope = relation_scope(self._schema, parent_model, intent.relation, parent)
            if not scope:
                continue
            try:
                existing = await client.model(intent.model).find_many(where=scope)
            except Exception:
                logger.warning(
                    "baseline lookup failed for %s", intent.path, exc_info=True
                )
                continue
            results.set_baseline(
                intent.scope,
                intent.field_name,
                frozenset(str(row.get(self._id_key)) for row in existing),
            )
