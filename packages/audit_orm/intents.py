"""Write-intent tree for nested mutations.

The detector walks a write payload guided by the model's relation fields and
turns every nested operation into a ``WriteIntent``. Scalar columns are never
inspected, so a JSON column holding ``{"create": ...}`` is plain data.

Payload shapes accepted under a relation field::

    create            dict | list[dict]
    create_many       {"data": list[dict]}
    connect           where | list[where]                    (list relations)
    connect_or_create {"where", "create"} | list[...]
    update            {"where", "data"} | list[...]          (list relations)
                      data | {"data": data}                  (single relations)
    update_many       {"where", "data"} | list[...]
    upsert            {"where", "create", "update"} | list[...]
                      {"create", "update"}                   (single relations)
    delete            where | list[where]                    (list relations)
                      True                                   (single relations)
    delete_many       where | list[where]

Children of an intent are grouped by branch. ``create`` children belong to
the payload that inserts a record, ``update`` children to the payload that
modifies an existing one. An upsert carries both; only the branch it resolves
to is ever explored.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator, Literal, Mapping

from packages.audit_orm.schema import FieldSchema, SchemaMetadata

Branch = Literal["create", "update"]


class NestedOperation(str, Enum):
    """Nested write verbs understood under a relation field."""

    CREATE = "create"
    CREATE_MANY = "create_many"
    CONNECT = "connect"
    CONNECT_OR_CREATE = "connect_or_create"
    UPDATE = "update"
    UPDATE_MANY = "update_many"
    UPSERT = "upsert"
    DELETE = "delete"
    DELETE_MANY = "delete_many"


CREATE_LIKE = frozenset(
    {
        NestedOperation.CREATE,
        NestedOperation.CREATE_MANY,
        NestedOperation.CONNECT_OR_CREATE,
        NestedOperation.UPSERT,
    }
)


@dataclass(frozen=True)
class WriteIntent:
    """One nested write at one location of the payload.

    ``path`` names the relation chain (``"posts.tags"``) and is shared by
    every intent on that chain; ``location`` is unique per intent. ``create``
    and ``update`` reference the caller's payload mappings directly so ids can
    be assigned in place on a copied payload.
    """

    location: str
    scope: str
    path: str
    parent_model: str
    relation: FieldSchema
    operation: NestedOperation
    where: Mapping[str, Any] | None = None
    create: dict[str, Any] | None = None
    update: Mapping[str, Any] | None = None
    children: Mapping[str, tuple["WriteIntent", ...]] = field(default_factory=dict)

    @property
    def model(self) -> str:
        """Return the related model this intent writes to."""
        return self.relation.type

    @property
    def field_name(self) -> str:
        """Return the relation field on the parent model."""
        return self.relation.name

    @property
    def is_list(self) -> bool:
        """Return whether the relation holds many records."""
        return self.relation.is_list

    def branch_for(self, existed: bool) -> Branch | None:
        """Return the branch this intent takes given whether its target existed."""
        op = self.operation
        if op is NestedOperation.UPSERT:
            return "update" if existed else "create"
        if op is NestedOperation.CONNECT_OR_CREATE:
            return None if existed else "create"
        if op in (NestedOperation.CREATE, NestedOperation.CREATE_MANY):
            return "create"
        if op is NestedOperation.UPDATE:
            return "update"
        return None

    def children_for(self, branch: Branch | None) -> tuple["WriteIntent", ...]:
        """Return the child intents under ``branch``."""
        if branch is None:
            return ()
        return self.children.get(branch, ())


def _listify(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _entries(relation: FieldSchema, op: NestedOperation, payload: Any) -> list[dict[str, Any]]:
    """Normalize one operation payload into ``{"where", "create", "update"}`` entries."""
    if op is NestedOperation.CREATE:
        return [{"create": item} for item in _listify(payload)]
    if op is NestedOperation.CREATE_MANY:
        rows = payload.get("data", []) if isinstance(payload, Mapping) else payload
        return [{"create": row} for row in _listify(rows)]
    if op is NestedOperation.CONNECT:
        return [{"where": item} for item in _listify(payload)]
    if op is NestedOperation.CONNECT_OR_CREATE:
        return [
            {"where": item.get("where"), "create": item.get("create")}
            for item in _listify(payload)
        ]
    if op in (NestedOperation.UPDATE, NestedOperation.UPDATE_MANY):
        if not relation.is_list and op is NestedOperation.UPDATE:
            if isinstance(payload, Mapping) and "data" in payload:
                return [{"where": payload.get("where"), "update": payload["data"]}]
            return [{"update": payload}]
        return [
            {"where": item.get("where"), "update": item.get("data")}
            for item in _listify(payload)
        ]
    if op is NestedOperation.UPSERT:
        return [
            {
                "where": item.get("where"),
                "create": item.get("create"),
                "update": item.get("update"),
            }
            for item in _listify(payload)
        ]
    if not relation.is_list and payload is True:
        return [{"where": None}]
    return [{"where": item} for item in _listify(payload)]


def detect_write_intents(
    schema: SchemaMetadata,
    model: str,
    data: Mapping[str, Any] | None,
    *,
    path: str = "",
    location: str = "",
) -> tuple[WriteIntent, ...]:
    """Return the write-intent tree for ``data`` written to ``model``."""
    if not isinstance(data, Mapping):
        return ()
    intents: list[WriteIntent] = []
    for relation in schema.get_relation_fields(model):
        payload = data.get(relation.name)
        if not isinstance(payload, Mapping):
            continue
        child_path = f"{path}.{relation.name}" if path else relation.name
        for op_key, op_payload in payload.items():
            try:
                op = NestedOperation(op_key)
            except ValueError:
                continue
            for index, entry in enumerate(_entries(relation, op, op_payload)):
                entry_location = f"{location}.{relation.name}" if location else relation.name
                entry_location = f"{entry_location}.{op.value}[{index}]"
                children: dict[str, tuple[WriteIntent, ...]] = {}
                if op is not NestedOperation.CREATE_MANY:
                    for branch in ("create", "update"):
                        branch_data = entry.get(branch)
                        if isinstance(branch_data, Mapping):
                            found = detect_write_intents(
                                schema,
                                relation.type,
                                branch_data,
                                path=child_path,
                                location=f"{entry_location}:{branch}",
                            )
                            if found:
                                children[branch] = found
                intents.append(
                    WriteIntent(
                        location=entry_location,
                        scope=location,
                        path=child_path,
                        parent_model=model,
                        relation=relation,
                        operation=op,
                        where=entry.get("where"),
                        create=entry.get("create"),
                        update=entry.get("update"),
                        children=children,
                    )
                )
    return tuple(intents)


def walk_intents(intents: tuple[WriteIntent, ...]) -> Iterator[WriteIntent]:
    """Yield every intent in the tree depth-first, parents before children."""
    for intent in intents:
        yield intent
        for branch in ("create", "update"):
            yield from walk_intents(intent.children_for(branch))
