"""Domain contracts for the audit lifecycle engine.

Actors and finished records are immutable pydantic models. Values that carry
callables or live client handles (entity configuration, the ambient context,
write results) are frozen dataclasses.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_CATEGORY = "model"


class AuditAction(str, Enum):
    """Resolved action stored on every audit record."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class Operation(str, Enum):
    """Mutating data-client operations the pipeline intercepts."""

    CREATE = "create"
    CREATE_MANY = "create_many"
    UPDATE = "update"
    UPDATE_MANY = "update_many"
    UPSERT = "upsert"
    DELETE = "delete"
    DELETE_MANY = "delete_many"

    @property
    def is_batch(self) -> bool:
        """Return whether this operation targets many records at once."""
        return self in BATCH_OPERATIONS

    @property
    def singular(self) -> "Operation":
        """Return the single-record operation a batch operation maps onto."""
        return _BATCH_TO_SINGULAR.get(self, self)


BATCH_OPERATIONS = frozenset(
    {Operation.CREATE_MANY, Operation.UPDATE_MANY, Operation.DELETE_MANY}
)

_BATCH_TO_SINGULAR = {
    Operation.CREATE_MANY: Operation.CREATE,
    Operation.UPDATE_MANY: Operation.UPDATE,
    Operation.DELETE_MANY: Operation.DELETE,
}


class AuditActor(BaseModel):
    """Identity responsible for a mutation."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    category: str = Field(min_length=1)
    type: str = Field(min_length=1)
    id: str = Field(min_length=1)
    name: str | None = None


DeferredWriteFn = Callable[[], Awaitable[None]]


@dataclass(frozen=True)
class AuditContext:
    """Ambient per-unit-of-work state propagated through nested calls.

    Only ``deferred_writes`` is ever mutated, by appending closures that run
    after the enclosing transaction commits. Entering a nested scope derives a
    new context with ``dataclasses.replace``.
    """

    actor: AuditActor
    request: Mapping[str, Any] | None = None
    transactional_client: Any = None
    processing_audit_log: bool = False
    in_implicit_transaction: bool = False
    deferred_writes: list[DeferredWriteFn] = field(default_factory=list)

    @property
    def in_explicit_transaction(self) -> bool:
        """Return whether a caller-managed transaction is active."""
        return self.transactional_client is not None and not self.in_implicit_transaction


class AuditRecord(BaseModel):
    """One finished audit row for one entity under one aggregate root."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    actor_category: str
    actor_type: str
    actor_id: str
    actor_context: Any = None
    entity_category: str
    entity_type: str
    entity_id: str
    entity_context: Any = None
    aggregate_category: str
    aggregate_type: str
    aggregate_id: str
    aggregate_context: Any = None
    action: AuditAction
    before: dict[str, Any] | None = None
    after: dict[str, Any] | None = None
    changes: dict[str, Any] | None = None
    request_context: Any = None
    created_at: datetime

    def to_row(self) -> dict[str, Any]:
        """Return a plain mapping suitable for bulk insertion."""
        row = self.model_dump(mode="python")
        row["action"] = self.action.value
        return row


@dataclass(frozen=True)
class ResolvedAggregate:
    """One (category, type, id) aggregate root an entity reports under."""

    category: str
    type: str
    id: str

    @property
    def cache_key(self) -> str:
        """Return the per-build enrichment cache key for this root."""
        return f"{self.type}:{self.id}"


@dataclass(frozen=True)
class EnrichmentMeta:
    """Aggregate description passed to every enricher call."""

    aggregate_type: str
    aggregate_category: str = DEFAULT_CATEGORY
    aggregate_id: str | None = None


ErrorPolicy = Union[Literal["fail", "log"], Callable[[BaseException], Any]]


@dataclass(frozen=True)
class EnricherConfig:
    """Enricher callable with its failure policy and timeout.

    ``enricher`` receives ``(input, client, meta)`` and may be sync or async.
    Batch enrichers receive a list and must return a list of equal length.
    """

    enricher: Callable[..., Any]
    on_error: ErrorPolicy = "fail"
    fallback: Any = None
    timeout_ms: int | None = None


IdResolver = Callable[[Mapping[str, Any], Any], Any]


@dataclass(frozen=True)
class AggregateRoot:
    """A business aggregate an entity is attributed to."""

    type: str
    resolve: IdResolver
    category: str = DEFAULT_CATEGORY


@dataclass(frozen=True)
class EntityConfig:
    """Static, caller-supplied audit configuration for one model."""

    type: str
    id_resolver: IdResolver
    category: str = DEFAULT_CATEGORY
    aggregates: tuple[AggregateRoot, ...] = ()
    exclude_self: bool = False
    exclude_fields: tuple[str, ...] | None = None
    context: EnricherConfig | None = None
    entity_context: EnricherConfig | None = None
    aggregate_context_map: Mapping[str, EnricherConfig] = field(default_factory=dict)
    tags: tuple[str, ...] = ()
    nested_operations: Mapping[str, bool] = field(default_factory=dict)
    include_relations: bool | None = None

    def entity_enricher(self) -> EnricherConfig | None:
        """Return the entity enricher, preferring ``entity_context``."""
        return self.entity_context or self.context

    def aggregate_enricher(self, aggregate_type: str) -> EnricherConfig | None:
        """Return the enricher for one aggregate type.

        Priority: exact type, then ``"*"``, then the shared ``context``.
        """
        return (
            self.aggregate_context_map.get(aggregate_type)
            or self.aggregate_context_map.get("*")
            or self.context
        )


@dataclass(frozen=True)
class ImmediateWrite:
    """Records were persisted before control returned to the caller."""

    written_at: datetime
    kind: Literal["immediate"] = "immediate"


@dataclass(frozen=True)
class DeferredWrite:
    """Records were queued to persist after the enclosing transaction commits."""

    queued_at: datetime
    execute: DeferredWriteFn
    kind: Literal["deferred"] = "deferred"


@dataclass(frozen=True)
class SkippedWrite:
    """Nothing was persisted, with the reason."""

    reason: str
    skipped_at: datetime
    kind: Literal["skipped"] = "skipped"


WriteResult = Union[ImmediateWrite, DeferredWrite, SkippedWrite]
