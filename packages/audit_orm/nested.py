"""Nested operation builder.

After the mutation, the builder walks the same write-intent tree the
pre-fetch coordinator explored and turns every nested write into a
``NestedChange`` (model, action, before, after). After-state comes from the
mutation result when the relation was returned. Otherwise the related
records are re-read by the parent's foreign key. That fallback runs after
the mutation and outside its atomic boundary, so a concurrent writer can be
observed.

Action resolution per intent:

- ``connect`` is never audited;
- ``connect_or_create`` is a ``create`` only when no record existed;
- ``upsert`` is an ``update`` when its target existed, else a ``create``;
- ``delete``/``delete_many`` emit the pre-fetched records with no after.
  When nothing was fetched they still emit one record per identifiable
  target, carrying only the id (and the parent's foreign key) as identity
  and no before snapshot.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from packages.audit_core.domain import AuditAction
from packages.audit_core.serialization import json_equal
from packages.audit_orm.intents import NestedOperation, WriteIntent
from packages.audit_orm.prefetch import PreFetchResults, Resolution, relation_scope
from packages.audit_orm.schema import FieldSchema, SchemaMetadata
from packages.audit_orm.where import matches
from packages.audit_shared.logging import fields, log_context

logger = logging.getLogger(__name__)

_CLAIM_FIRST = frozenset(
    {
        NestedOperation.CONNECT,
        NestedOperation.UPDATE,
        NestedOperation.UPDATE_MANY,
        NestedOperation.DELETE,
        NestedOperation.DELETE_MANY,
    }
)


@dataclass(frozen=True)
class NestedChange:
    """One nested entity change ready for record building."""

    model: str
    path: str
    action: AuditAction
    before: dict[str, Any] | None
    after: dict[str, Any] | None
    identity: dict[str, Any] | None = None

    @property
    def entity(self) -> dict[str, Any]:
        """Return the record aggregates and ids are resolved from."""
        if self.after is not None:
            return self.after
        if self.before is not None:
            return self.before
        return self.identity or {}

    @property
    def entity_is_snapshot(self) -> bool:
        """Return whether ``entity`` is a full record rather than a bare identity."""
        return self.after is not None or self.before is not None


class _Claims:
    """Tracks which related records were already attributed to an intent."""

    def __init__(self, id_key: str) -> None:
        self._id_key = id_key
        self._ids: set[str] = set()

    def key(self, record: Mapping[str, Any]) -> str:
        return str(record.get(self._id_key))

    def take(self, record: Mapping[str, Any]) -> None:
        self._ids.add(self.key(record))

    def taken(self, record: Mapping[str, Any]) -> bool:
        return self.key(record) in self._ids


class NestedOperationBuilder:
    """Collect nested changes for one executed top-level operation."""

    def __init__(
        self,
        schema: SchemaMetadata,
        *,
        fetch_before: Callable[[str, str], bool],
        id_key: str = "id",
    ) -> None:
        self._schema = schema
        self._fetch_before = fetch_before
        self._id_key = id_key

    async def collect(
        self,
        *,
        client: Any,
        model: str,
        intents: tuple[WriteIntent, ...],
        result: Mapping[str, Any] | None,
        prefetch: PreFetchResults,
    ) -> list[NestedChange]:
        """Return every nested change under ``result``, depth-first."""
        changes: list[NestedChange] = []
        if intents and result is not None:
            await self._walk(client, model, result, intents, prefetch, changes)
        return changes

    async def _walk(
        self,
        client: Any,
        parent_model: str,
        parent: Mapping[str, Any],
        intents: tuple[WriteIntent, ...],
        prefetch: PreFetchResults,
        changes: list[NestedChange],
    ) -> None:
        groups: dict[str, list[WriteIntent]] = {}
        for intent in intents:
            groups.setdefault(intent.field_name, []).append(intent)

        for group in groups.values():
            relation = group[0].relation
            scope = relation_scope(self._schema, parent_model, relation, parent)
            related = await self._related(client, parent_model, relation, parent, scope)
            claims = _Claims(self._id_key)
            ordered = [i for i in group if i.operation in _CLAIM_FIRST]
            ordered += [i for i in group if i.operation not in _CLAIM_FIRST]
            for intent in ordered:
                with log_context({fields.AUDIT_PATH: intent.path}):
                    await self._apply(
                        client, intent, related, claims, prefetch, changes, scope
                    )

    async def _related(
        self,
        client: Any,
        parent_model: str,
        relation: FieldSchema,
        parent: Mapping[str, Any],
        scope: Mapping[str, Any] | None,
    ) -> list[dict[str, Any]]:
        """Return the current related records from the result or a refetch."""
        if relation.name in parent:
            value = parent[relation.name]
            if value is None:
                return []
            return list(value) if isinstance(value, list) else [value]

        if not scope:
            logger.debug(
                "nested %s.%s missing from result and not refetchable",
                parent_model,
                relation.name,
            )
            return []
        logger.debug("refetching nested %s.%s by foreign key", parent_model, relation.name)
        return list(await client.model(relation.type).find_many(where=scope))

    async def _apply(
        self,
        client: Any,
        intent: WriteIntent,
        related: list[dict[str, Any]],
        claims: _Claims,
        prefetch: PreFetchResults,
        changes: list[NestedChange],
        scope: Mapping[str, Any] | None,
    ) -> None:
        op = intent.operation
        resolution = prefetch.resolution(intent)

        if op is NestedOperation.CONNECT:
            for record in self._matching(intent, related):
                claims.take(record)
            return

        if op in (NestedOperation.DELETE, NestedOperation.DELETE_MANY):
            if resolution is None or not resolution.looked_up:
                for identity in self._delete_identities(intent, scope):
                    changes.append(
                        NestedChange(
                            model=intent.model,
                            path=intent.path,
                            action=AuditAction.DELETE,
                            before=None,
                            after=None,
                            identity=identity,
                        )
                    )
                return
            for before in resolution.records:
                changes.append(self._change(intent, AuditAction.DELETE, before, None))
            return

        if op is NestedOperation.UPDATE_MANY:
            befores = resolution.records if resolution else ()
            if befores:
                for before in befores:
                    after = self._by_id(related, before)
                    if after is not None:
                        claims.take(after)
                        changes.append(self._change(intent, AuditAction.UPDATE, before, after))
            else:
                for after in self._matching(intent, related):
                    claims.take(after)
                    changes.append(self._change(intent, AuditAction.UPDATE, None, after))
            return

        existed = resolution.existed if resolution else False
        if op is NestedOperation.UPDATE or (op is NestedOperation.UPSERT and existed):
            await self._apply_update(
                client, intent, resolution, related, claims, prefetch, changes
            )
            return

        if op is NestedOperation.CONNECT_OR_CREATE and existed:
            for record in resolution.records if resolution else ():
                claims.take(record)
            logger.debug("connect_or_create at %s linked an existing record", intent.path)
            return

        created = self._find_created(intent, related, claims, prefetch)
        if created is None:
            logger.debug("created record at %s not found after the write", intent.path)
            return
        changes.append(self._change(intent, AuditAction.CREATE, None, created))
        children = intent.children_for("create")
        if children:
            await self._walk(client, intent.model, created, children, prefetch, changes)

    async def _apply_update(
        self,
        client: Any,
        intent: WriteIntent,
        resolution: Resolution | None,
        related: list[dict[str, Any]],
        claims: _Claims,
        prefetch: PreFetchResults,
        changes: list[NestedChange],
    ) -> None:
        before = resolution.record if resolution else None
        if before is not None:
            after = self._by_id(related, before)
        elif intent.is_list:
            after = next(iter(self._matching(intent, related)), None)
        else:
            after = related[0] if related else None
        if after is None:
            logger.debug("updated record at %s not found after the write", intent.path)
            return
        claims.take(after)
        if intent.operation is NestedOperation.UPSERT and not self._fetch_before(
            intent.model, "update"
        ):
            before = None
        changes.append(self._change(intent, AuditAction.UPDATE, before, after))
        children = intent.children_for("update")
        if children:
            await self._walk(client, intent.model, after, children, prefetch, changes)

    def _change(
        self,
        intent: WriteIntent,
        action: AuditAction,
        before: Mapping[str, Any] | None,
        after: Mapping[str, Any] | None,
    ) -> NestedChange:
        return NestedChange(
            model=intent.model,
            path=intent.path,
            action=action,
            before=dict(before) if before is not None else None,
            after=dict(after) if after is not None else None,
        )

    def _delete_identities(
        self, intent: WriteIntent, scope: Mapping[str, Any] | None
    ) -> list[dict[str, Any]]:
        """Return a bare identity per delete target named by id in the filter."""
        base = dict(scope or {})
        where = intent.where or {}
        for name, value in where.items():
            field = self._schema.get_field(intent.model, name)
            if name == self._id_key or field is None or field.is_relation:
                continue
            if not isinstance(value, Mapping):
                base[name] = value

        wanted = where.get(self._id_key, base.get(self._id_key))
        if isinstance(wanted, Mapping):
            ids = list(wanted.get("in") or ())
        elif wanted is not None:
            ids = [wanted]
        else:
            ids = []
        if not ids:
            logger.warning(
                "nested delete at %s has no fetched state and no id; not audited", intent.path
            )
        return [{**base, self._id_key: entity_id} for entity_id in ids]

    def _by_id(
        self, related: list[dict[str, Any]], record: Mapping[str, Any]
    ) -> dict[str, Any] | None:
        wanted = record.get(self._id_key)
        for candidate in related:
            if candidate.get(self._id_key) == wanted:
                return candidate
        return None

    def _matching(
        self, intent: WriteIntent, related: list[dict[str, Any]]
    ) -> list[dict[str, Any]]:
        if not intent.is_list and intent.where is None:
            return related[:1]
        return [
            record
            for record in related
            if matches(record, intent.where, schema=self._schema, model=intent.model)
        ]

    def _find_created(
        self,
        intent: WriteIntent,
        related: list[dict[str, Any]],
        claims: _Claims,
        prefetch: PreFetchResults,
    ) -> dict[str, Any] | None:
        data = intent.create or {}
        wanted_id = data.get(self._id_key)
        if wanted_id is not None:
            for record in related:
                if record.get(self._id_key) == wanted_id:
                    claims.take(record)
                    return record
            return None

        baseline = prefetch.baseline(intent.scope, intent.field_name)
        scalars = {
            field.name
            for field in self._schema.get_scalar_fields(intent.model)
            if field.name in data
        }
        fallback: dict[str, Any] | None = None
        for record in related:
            if claims.taken(record) or claims.key(record) in baseline:
                continue
            if all(json_equal(record.get(name), data[name]) for name in scalars):
                claims.take(record)
                return record
            if fallback is None:
                fallback = record
        if fallback is not None and not intent.is_list:
            claims.take(fallback)
        return fallback if not intent.is_list else None
