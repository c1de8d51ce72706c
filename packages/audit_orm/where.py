"""Filter evaluation and lookup planning for the nested-write DSL.

Filters are plain mappings. A key is a scalar field name, a compound unique
key (``{"org_id_slug": {"org_id": 1, "slug": "a"}}``), or one of the boolean
combinators ``AND``/``OR``/``NOT``. A field value is either a literal
(equality) or an operator mapping such as ``{"in": [...]}``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Literal, Mapping

from packages.audit_orm.schema import SchemaMetadata, UniqueConstraint

COMBINATORS = frozenset({"AND", "OR", "NOT"})
OPERATORS = frozenset(
    {"equals", "in", "not_in", "not", "gt", "gte", "lt", "lte", "contains", "startswith"}
)

LookupKind = Literal["point", "set"]


@dataclass(frozen=True)
class LookupPlan:
    """How to fetch the records a filter addresses.

    ``point`` plans go through ``find_unique`` with ``where`` rewritten to the
    constraint's compound key when needed; ``set`` plans use ``find_many``.
    """

    kind: LookupKind
    where: dict[str, Any]
    constraint: UniqueConstraint | None = None

    @property
    def is_point(self) -> bool:
        """Return whether the plan targets at most one record."""
        return self.kind == "point"


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def has_or_not(where: Mapping[str, Any]) -> bool:
    """Return whether ``where`` uses ``OR``/``NOT`` directly or inside ``AND``."""
    if "OR" in where or "NOT" in where:
        return True
    for clause in _as_list(where.get("AND", [])):
        if isinstance(clause, Mapping) and has_or_not(clause):
            return True
    return False


def _is_literal(value: Any) -> bool:
    if isinstance(value, Mapping):
        return set(value) == {"equals"}
    return not isinstance(value, (list, tuple, set))


def _literal(value: Any) -> Any:
    if isinstance(value, Mapping):
        return value["equals"]
    return value


def expand_compound_keys(
    schema: SchemaMetadata, model: str, where: Mapping[str, Any]
) -> dict[str, Any]:
    """Flatten compound unique keys into their component field filters."""
    compound = {
        constraint.compound_key: constraint
        for constraint in schema.get_unique_constraints(model)
        if constraint.is_composite
    }
    expanded: dict[str, Any] = {}
    for key, value in where.items():
        constraint = compound.get(key)
        if constraint is not None and isinstance(value, Mapping):
            for field_name in constraint.fields:
                expanded[field_name] = value.get(field_name)
        else:
            expanded[key] = value
    return expanded


def matching_unique_constraint(
    schema: SchemaMetadata, model: str, where: Mapping[str, Any]
) -> UniqueConstraint | None:
    """Return the unique constraint whose fields exactly equal ``where``'s keys."""
    flat = expand_compound_keys(schema, model, where)
    if any(key in COMBINATORS for key in flat):
        return None
    if not all(_is_literal(value) for value in flat.values()):
        return None
    keys = set(flat)
    for constraint in schema.get_unique_constraints(model):
        if set(constraint.fields) == keys:
            return constraint
    return None


def plan_lookup(
    schema: SchemaMetadata, model: str, where: Mapping[str, Any]
) -> LookupPlan:
    """Classify ``where`` as a point lookup or a set lookup."""
    if not where or has_or_not(where):
        return LookupPlan(kind="set", where=dict(where))
    constraint = matching_unique_constraint(schema, model, where)
    if constraint is None:
        return LookupPlan(kind="set", where=dict(where))
    flat = expand_compound_keys(schema, model, where)
    if constraint.is_composite:
        rewritten = {
            constraint.compound_key: {
                field_name: _literal(flat[field_name]) for field_name in constraint.fields
            }
        }
    else:
        field_name = constraint.fields[0]
        rewritten = {field_name: _literal(flat[field_name])}
    return LookupPlan(kind="point", where=rewritten, constraint=constraint)


def scoped(where: Mapping[str, Any] | None, scope: Mapping[str, Any]) -> dict[str, Any]:
    """Return ``where`` narrowed to records also matching ``scope``."""
    if not where:
        return dict(scope)
    if not scope:
        return dict(where)
    return {"AND": [dict(where), dict(scope)]}


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "equals":
        return actual == expected
    if op == "in":
        return actual in list(expected)
    if op == "not_in":
        return actual not in list(expected)
    if op == "not":
        if isinstance(expected, Mapping):
            return not _match_value(actual, expected)
        return actual != expected
    if op == "contains":
        return actual is not None and expected in actual
    if op == "startswith":
        return isinstance(actual, str) and actual.startswith(expected)
    if actual is None or expected is None:
        return False
    if op == "gt":
        return actual > expected
    if op == "gte":
        return actual >= expected
    if op == "lt":
        return actual < expected
    if op == "lte":
        return actual <= expected
    raise ValueError(f"unsupported filter operator: {op}")


def _match_value(actual: Any, condition: Any) -> bool:
    if isinstance(condition, Mapping) and condition and set(condition) <= OPERATORS:
        return all(_compare(op, actual, expected) for op, expected in condition.items())
    return actual == condition


def matches(
    record: Mapping[str, Any],
    where: Mapping[str, Any] | None,
    *,
    schema: SchemaMetadata | None = None,
    model: str | None = None,
) -> bool:
    """Return whether ``record`` satisfies ``where``.

    Compound unique keys are only understood when ``schema`` and ``model``
    are given. A field the record does not carry never matches.
    """
    if not where:
        return True
    if schema is not None and model is not None:
        where = expand_compound_keys(schema, model, where)
    for key, condition in where.items():
        if key == "AND":
            clauses = _as_list(condition)
            if not all(matches(record, c, schema=schema, model=model) for c in clauses):
                return False
        elif key == "OR":
            clauses = _as_list(condition)
            if not any(matches(record, c, schema=schema, model=model) for c in clauses):
                return False
        elif key == "NOT":
            clauses = _as_list(condition)
            if any(matches(record, c, schema=schema, model=model) for c in clauses):
                return False
        elif key not in record:
            return False
        elif not _match_value(record[key], condition):
            return False
    return True
