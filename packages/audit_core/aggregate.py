"""Aggregate root resolution and entity definition helpers.

An entity reports under itself (unless ``exclude_self``) and under every
declared aggregate root whose resolver yields an id. Resolvers may be pure
field lookups (``self_ref``/``foreign_key``), transforms, or coroutines that
query the data store.
"""

from __future__ import annotations

import inspect
import logging
from typing import Any, Callable, Iterable, Mapping

from packages.audit_core.domain import (
    DEFAULT_CATEGORY,
    AggregateRoot,
    EnricherConfig,
    EntityConfig,
    IdResolver,
    ResolvedAggregate,
)
from packages.audit_shared.errors import InvalidAggregateIdError

logger = logging.getLogger(__name__)


def self_ref(key: str = "id") -> IdResolver:
    """Resolve an id from one of the entity's own fields."""

    def resolve(entity: Mapping[str, Any], client: Any = None) -> Any:
        return entity.get(key)

    resolve.__name__ = f"self_ref_{key}"
    return resolve


def foreign_key(key: str) -> IdResolver:
    """Resolve an aggregate id from a foreign-key column on the entity."""

    def resolve(entity: Mapping[str, Any], client: Any = None) -> Any:
        return entity.get(key)

    resolve.__name__ = f"foreign_key_{key}"
    return resolve


def to(
    aggregate_type: str,
    resolver: IdResolver,
    *,
    category: str = DEFAULT_CATEGORY,
) -> AggregateRoot:
    """Declare an aggregate root of ``aggregate_type`` resolved by ``resolver``."""
    return AggregateRoot(type=aggregate_type, resolve=resolver, category=category)


def define_entity(
    *,
    type: str,
    category: str = DEFAULT_CATEGORY,
    id_resolver: IdResolver | None = None,
    aggregates: Iterable[AggregateRoot] = (),
    exclude_self: bool = False,
    exclude_fields: Iterable[str] | None = None,
    context: EnricherConfig | None = None,
    entity_context: EnricherConfig | None = None,
    aggregate_context_map: Mapping[str, EnricherConfig] | None = None,
    tags: Iterable[str] = (),
    nested_operations: Mapping[str, bool] | None = None,
    include_relations: bool | None = None,
) -> EntityConfig:
    """Build an ``EntityConfig`` with defaults applied.

    ``id_resolver`` defaults to the entity's own ``id`` field.
    ``nested_operations`` maps ``"update"``/``"delete"`` to a per-model
    fetch-before override for nested writes.
    """
    unknown_ops = set(nested_operations or {}) - {"update", "delete"}
    if unknown_ops:
        raise ValueError(
            "nested_operations only supports 'update' and 'delete', got: "
            + ", ".join(sorted(unknown_ops))
        )
    return EntityConfig(
        type=type,
        category=category,
        id_resolver=id_resolver or self_ref("id"),
        aggregates=tuple(aggregates),
        exclude_self=exclude_self,
        exclude_fields=tuple(exclude_fields) if exclude_fields is not None else None,
        context=context,
        entity_context=entity_context,
        aggregate_context_map=dict(aggregate_context_map or {}),
        tags=tuple(tags),
        nested_operations=dict(nested_operations or {}),
        include_relations=include_relations,
    )


def normalize_id(value: Any) -> str:
    """Return the canonical string form of an entity or aggregate id.

    Strings pass through, booleans become ``"true"``/``"false"``, and
    everything else (arbitrary-precision ints, UUIDs, Decimals) uses ``str``.
    """
    if value is None:
        raise InvalidAggregateIdError(message="aggregate id must not be None")
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


async def call_resolver(
    resolver: Callable[..., Any], entity: Mapping[str, Any], client: Any
) -> Any:
    """Invoke a sync or async resolver and return its raw value."""
    result = resolver(entity, client)
    if inspect.isawaitable(result):
        result = await result
    return result


async def resolve_entity_id(
    entity_config: EntityConfig, entity: Mapping[str, Any], client: Any
) -> str | None:
    """Resolve and normalize the entity's own id, or ``None`` if unresolvable."""
    try:
        raw = await call_resolver(entity_config.id_resolver, entity, client)
    except Exception:
        logger.warning(
            "entity id resolver for %s failed; skipping audit",
            entity_config.type,
            exc_info=True,
        )
        return None
    if raw is None:
        logger.debug("entity id resolved to None for %s", entity_config.type)
        return None
    return normalize_id(raw)


async def resolve_aggregate_roots(
    entity_config: EntityConfig,
    entity: Mapping[str, Any],
    client: Any,
    *,
    entity_id: str | None = None,
) -> list[ResolvedAggregate]:
    """Return the ordered, deduplicated aggregate roots for one entity.

    Self comes first unless excluded, then declared roots in declaration
    order. A resolver that raises or yields ``None`` contributes no root.
    """
    roots: list[ResolvedAggregate] = []
    seen: set[tuple[str, str, str]] = set()

    def add(root: ResolvedAggregate) -> None:
        key = (root.category, root.type, root.id)
        if key in seen:
            return
        seen.add(key)
        roots.append(root)

    if not entity_config.exclude_self:
        self_id = entity_id
        if self_id is None:
            self_id = await resolve_entity_id(entity_config, entity, client)
        if self_id is not None:
            add(
                ResolvedAggregate(
                    category=entity_config.category,
                    type=entity_config.type,
                    id=self_id,
                )
            )

    for declaration in entity_config.aggregates:
        try:
            raw = await call_resolver(declaration.resolve, entity, client)
        except Exception:
            logger.warning(
                "aggregate resolver for %s failed; skipping root",
                declaration.type,
                exc_info=True,
            )
            continue
        if raw is None:
            continue
        add(
            ResolvedAggregate(
                category=declaration.category,
                type=declaration.type,
                id=normalize_id(raw),
            )
        )

    return roots
