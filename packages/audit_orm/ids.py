"""Client-side id pre-assignment for inserted rows.

Batch inserts and nested creates only report counts or return the parent
row, so rows whose id the schema generates client-side (``uuid``/``ulid``)
get their id before the write. That lets the pipeline audit them from the
input data and match them in results without extra reads.
"""

from __future__ import annotations

from typing import Any, Callable, MutableMapping, Sequence

from packages.audit_orm.intents import CREATE_LIKE, WriteIntent, walk_intents
from packages.audit_orm.schema import SchemaMetadata
from packages.audit_shared.ids import get_id_generator


def id_generator_for(
    schema: SchemaMetadata, model: str, id_key: str = "id"
) -> Callable[[], str] | None:
    """Return the generator for ``model``'s id default, or ``None``."""
    id_field = schema.get_id_field(model, id_key)
    if id_field is None:
        return None
    return get_id_generator(id_field.default)


def ensure_ids(
    schema: SchemaMetadata,
    model: str,
    rows: Sequence[MutableMapping[str, Any]],
    *,
    id_key: str = "id",
) -> bool:
    """Fill missing ids in ``rows`` in place.

    Returns whether every row now carries an id. Autoincrement and unknown
    defaults leave rows unchanged.
    """
    id_field = schema.get_id_field(model, id_key)
    if id_field is None:
        return False
    generate = get_id_generator(id_field.default)
    complete = True
    for row in rows:
        if row.get(id_field.name) is not None:
            continue
        if generate is None:
            complete = False
            continue
        row[id_field.name] = generate()
    return complete


def assign_nested_ids(
    schema: SchemaMetadata, intents: tuple[WriteIntent, ...], *, id_key: str = "id"
) -> None:
    """Pre-assign ids to every nested create payload in the tree.

    Mutates the payload mappings the intents reference; call it on a copy of
    the caller's arguments.
    """
    for intent in walk_intents(intents):
        if intent.operation in CREATE_LIKE and isinstance(intent.create, dict):
            ensure_ids(schema, intent.model, [intent.create], id_key=id_key)
