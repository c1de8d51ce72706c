"""Framework-agnostic audit lifecycle core."""

from .aggregate import define_entity, foreign_key, normalize_id, self_ref, to
from .context import AuditContextProvider
from .domain import (
    AggregateRoot,
    AuditAction,
    AuditActor,
    AuditContext,
    AuditRecord,
    DeferredWrite,
    EnricherConfig,
    EntityConfig,
    ImmediateWrite,
    Operation,
    SkippedWrite,
    WriteResult,
)
from .records import AuditRecordBuilder
from .redaction import Redactor, redact_sensitive
from .write_strategies import WriteErrorHandler, WriteStrategy, WriteStrategyCoordinator

__all__ = [
    "AggregateRoot",
    "AuditAction",
    "AuditActor",
    "AuditContext",
    "AuditContextProvider",
    "AuditRecord",
    "AuditRecordBuilder",
    "DeferredWrite",
    "EnricherConfig",
    "EntityConfig",
    "ImmediateWrite",
    "Operation",
    "Redactor",
    "SkippedWrite",
    "WriteErrorHandler",
    "WriteResult",
    "WriteStrategy",
    "WriteStrategyCoordinator",
    "define_entity",
    "foreign_key",
    "normalize_id",
    "redact_sensitive",
    "self_ref",
    "to",
]
