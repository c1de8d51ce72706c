"""Declarative schema metadata for audited models.

Hosts describe their models once with ``model``/``scalar``/``relation`` and
hand the resulting ``SchemaMetadata`` to the audited client. The pipeline only
consults it for relation fields (to walk nested writes), unique constraints
(to plan point lookups), and id defaults (to pre-assign batch ids).

Relation convention: the side that stores the foreign key declares
``fields``/``references``; the opposite side declares neither and is paired by
``relation_name`` or, when unambiguous, by target model.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Literal

UniqueKind = Literal["primary_key", "unique_field", "unique_index"]


@dataclass(frozen=True)
class FieldSchema:
    """One model field: a scalar column or a relation to another model."""

    name: str
    type: str = "String"
    kind: Literal["scalar", "relation"] = "scalar"
    is_list: bool = False
    is_required: bool = False
    is_unique: bool = False
    is_id: bool = False
    default: str | None = None
    relation_name: str | None = None
    relation_fields: tuple[str, ...] = ()
    relation_references: tuple[str, ...] = ()

    @property
    def is_relation(self) -> bool:
        """Return whether this field points at another model."""
        return self.kind == "relation"

    @property
    def related_model(self) -> str | None:
        """Return the target model name for relation fields."""
        return self.type if self.is_relation else None

    @property
    def holds_foreign_key(self) -> bool:
        """Return whether this side of the relation stores the foreign key."""
        return bool(self.relation_fields)


@dataclass(frozen=True)
class UniqueConstraint:
    """A primary key, single unique field, or composite unique index."""

    kind: UniqueKind
    fields: tuple[str, ...]
    name: str | None = None

    @property
    def is_composite(self) -> bool:
        """Return whether the constraint spans several fields."""
        return len(self.fields) > 1

    @property
    def compound_key(self) -> str:
        """Return the filter key used to address a composite constraint."""
        return self.name or "_".join(self.fields)


@dataclass(frozen=True)
class ModelSchema:
    """Field and constraint declarations for one model."""

    name: str
    fields: tuple[FieldSchema, ...]
    unique_indexes: tuple[UniqueConstraint, ...] = ()
    primary_key: UniqueConstraint | None = None


def scalar(
    name: str,
    type: str = "String",
    *,
    id: bool = False,
    unique: bool = False,
    required: bool = False,
    default: str | None = None,
    list: bool = False,
) -> FieldSchema:
    """Declare a scalar column."""
    return FieldSchema(
        name=name,
        type=type,
        kind="scalar",
        is_list=list,
        is_required=required or id,
        is_unique=unique or id,
        is_id=id,
        default=default,
    )


def relation(
    name: str,
    model: str,
    *,
    list: bool = False,
    required: bool = False,
    fields: Iterable[str] = (),
    references: Iterable[str] = (),
    relation_name: str | None = None,
) -> FieldSchema:
    """Declare a relation field pointing at ``model``."""
    return FieldSchema(
        name=name,
        type=model,
        kind="relation",
        is_list=list,
        is_required=required,
        relation_name=relation_name,
        relation_fields=tuple(fields),
        relation_references=tuple(references),
    )


def model(
    name: str,
    *fields: FieldSchema,
    unique: Iterable[Iterable[str] | UniqueConstraint] = (),
    primary_key: Iterable[str] | None = None,
    primary_key_name: str | None = None,
) -> ModelSchema:
    """Declare a model with optional composite unique indexes and primary key."""
    indexes: list[UniqueConstraint] = []
    for entry in unique:
        if isinstance(entry, UniqueConstraint):
            indexes.append(entry)
        else:
            indexes.append(UniqueConstraint(kind="unique_index", fields=tuple(entry)))
    pk = None
    if primary_key is not None:
        pk = UniqueConstraint(
            kind="primary_key", fields=tuple(primary_key), name=primary_key_name
        )
    return ModelSchema(
        name=name, fields=tuple(fields), unique_indexes=tuple(indexes), primary_key=pk
    )


class SchemaMetadata:
    """Lookup facade over a set of ``ModelSchema`` declarations."""

    def __init__(self, models: Iterable[ModelSchema]) -> None:
        self._models: dict[str, ModelSchema] = {}
        for declared in models:
            if declared.name in self._models:
                raise ValueError(f"model declared twice: {declared.name}")
            self._models[declared.name] = declared
        self._fields = {
            name: {field.name: field for field in declared.fields}
            for name, declared in self._models.items()
        }
        for name, fields in self._fields.items():
            for field in fields.values():
                if field.is_relation and field.type not in self._models:
                    raise ValueError(
                        f"{name}.{field.name} references unknown model {field.type}"
                    )

    @property
    def model_names(self) -> tuple[str, ...]:
        """Return every declared model name."""
        return tuple(self._models)

    def has_model(self, model: str) -> bool:
        """Return whether ``model`` is declared."""
        return model in self._models

    def get_model(self, model: str) -> ModelSchema:
        """Return the declaration for ``model`` or raise ``KeyError``."""
        try:
            return self._models[model]
        except KeyError:
            raise KeyError(f"unknown model: {model}") from None

    def get_all_fields(self, model: str) -> tuple[FieldSchema, ...]:
        """Return every field of ``model`` in declaration order."""
        return self.get_model(model).fields

    def get_field(self, model: str, field: str) -> FieldSchema | None:
        """Return one field of ``model`` or ``None``."""
        return self._fields.get(model, {}).get(field)

    def get_relation_fields(self, model: str) -> tuple[FieldSchema, ...]:
        """Return only the relation fields of ``model``."""
        return tuple(field for field in self.get_all_fields(model) if field.is_relation)

    def get_scalar_fields(self, model: str) -> tuple[FieldSchema, ...]:
        """Return only the scalar fields of ``model``."""
        return tuple(field for field in self.get_all_fields(model) if not field.is_relation)

    def get_unique_constraints(self, model: str) -> tuple[UniqueConstraint, ...]:
        """Return primary key, unique fields, then composite indexes."""
        declared = self.get_model(model)
        constraints: list[UniqueConstraint] = []
        if declared.primary_key is not None:
            constraints.append(declared.primary_key)
        for field in declared.fields:
            if field.is_relation:
                continue
            if field.is_id and declared.primary_key is None:
                constraints.append(UniqueConstraint(kind="primary_key", fields=(field.name,)))
            elif field.is_unique and not field.is_id:
                constraints.append(UniqueConstraint(kind="unique_field", fields=(field.name,)))
        constraints.extend(declared.unique_indexes)
        return tuple(constraints)

    def get_id_field(self, model: str, id_key: str = "id") -> FieldSchema | None:
        """Return the id field named ``id_key``, falling back to the ``is_id`` field."""
        field = self.get_field(model, id_key)
        if field is not None and not field.is_relation:
            return field
        for candidate in self.get_scalar_fields(model):
            if candidate.is_id:
                return candidate
        return None

    def opposite_relation(self, model: str, field_name: str) -> FieldSchema | None:
        """Return the relation field on the other side of ``model.field_name``."""
        field = self.get_field(model, field_name)
        if field is None or not field.is_relation:
            return None
        candidates = [
            other
            for other in self.get_relation_fields(field.type)
            if other.type == model and not (field.type == model and other.name == field.name)
        ]
        if field.relation_name is not None:
            candidates = [c for c in candidates if c.relation_name == field.relation_name]
        if len(candidates) == 1:
            return candidates[0]
        return None

    def foreign_key_side(
        self, model: str, field_name: str
    ) -> tuple[FieldSchema, FieldSchema | None]:
        """Return ``(owning_field, opposite)`` where the owning field holds the FK.

        The owning field is ``model.field_name`` itself when it stores the
        foreign key, otherwise the opposite relation on the related model.
        """
        field = self.get_field(model, field_name)
        if field is None or not field.is_relation:
            raise KeyError(f"{model}.{field_name} is not a relation")
        opposite = self.opposite_relation(model, field_name)
        if field.holds_foreign_key:
            return field, opposite
        if opposite is None or not opposite.holds_foreign_key:
            raise ValueError(
                f"cannot resolve the foreign key side of {model}.{field_name}"
            )
        return opposite, field


_AUDIT_LOG_COLUMNS: tuple[tuple[str, str], ...] = (
    ("actor_category", "String"),
    ("actor_type", "String"),
    ("actor_id", "String"),
    ("actor_context", "Json"),
    ("entity_category", "String"),
    ("entity_type", "String"),
    ("entity_id", "String"),
    ("entity_context", "Json"),
    ("aggregate_category", "String"),
    ("aggregate_type", "String"),
    ("aggregate_id", "String"),
    ("aggregate_context", "Json"),
    ("action", "String"),
    ("before", "Json"),
    ("after", "Json"),
    ("changes", "Json"),
    ("request_context", "Json"),
    ("created_at", "DateTime"),
)


def audit_log_model(name: str = "AuditLog") -> ModelSchema:
    """Declare the model the default writer bulk-inserts audit rows into."""
    return model(
        name,
        scalar("id", id=True, default="ulid"),
        *(scalar(column, column_type) for column, column_type in _AUDIT_LOG_COLUMNS),
    )
