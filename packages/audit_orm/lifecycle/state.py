"""Accreting state threaded through lifecycle stages.

Every stage receives an ``OperationState`` and returns a new one built with
``dataclasses.replace``; no stage mutates the state it was given.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

from packages.audit_core.context import AuditContextProvider
from packages.audit_core.domain import (
    AuditContext,
    AuditRecord,
    EntityConfig,
    Operation,
    WriteResult,
)
from packages.audit_core.records import AuditRecordBuilder, BatchItem
from packages.audit_core.write_strategies import WriteStrategyCoordinator
from packages.audit_orm.config import AuditOptions
from packages.audit_orm.intents import WriteIntent
from packages.audit_orm.nested import NestedOperationBuilder
from packages.audit_orm.prefetch import PreFetchCoordinator, PreFetchResults
from packages.audit_orm.schema import SchemaMetadata


@dataclass(frozen=True)
class LifecycleServices:
    """Collaborators shared by every pipeline run of one audited client."""

    schema: SchemaMetadata
    options: AuditOptions
    base_client: Any
    provider: AuditContextProvider
    record_builder: AuditRecordBuilder
    prefetcher: PreFetchCoordinator
    nested_builder: NestedOperationBuilder
    coordinator: WriteStrategyCoordinator


@dataclass(frozen=True)
class OperationState:
    """Everything known about one intercepted operation so far."""

    model: str
    operation: Operation
    args: Mapping[str, Any]
    context: AuditContext
    client: Any
    entity_config: EntityConfig | None = None
    before: dict[str, Any] | None = None
    creating: bool = True
    intents: tuple[WriteIntent, ...] = ()
    prefetch: PreFetchResults | None = None
    caller_include: Mapping[str, Any] | None = None
    injected_include: Mapping[str, Any] | None = None
    raw_result: Any = None
    result: Any = None
    befores: tuple[dict[str, Any], ...] = ()
    items: tuple[BatchItem, ...] = ()
    actor_context: Any = None
    entity_context: Any = None
    records: tuple[AuditRecord, ...] = ()
    write_result: WriteResult | None = None

    @property
    def tags(self) -> tuple[str, ...]:
        """Return the tags of the operation's model."""
        return self.entity_config.tags if self.entity_config is not None else ()
