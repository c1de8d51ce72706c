"""Data-client integration for the audit lifecycle engine."""

from .client import AuditedClient, AuditedModelDelegate
from .config import AuditOptions, validate_options
from .ids import ensure_ids
from .intents import NestedOperation, WriteIntent, detect_write_intents
from .prefetch import PreFetchCoordinator, PreFetchResults
from .schema import (
    FieldSchema,
    ModelSchema,
    SchemaMetadata,
    UniqueConstraint,
    audit_log_model,
    model,
    relation,
    scalar,
)
from .transaction import transactional
from .where import plan_lookup

__all__ = [
    "AuditOptions",
    "AuditedClient",
    "AuditedModelDelegate",
    "FieldSchema",
    "ModelSchema",
    "NestedOperation",
    "PreFetchCoordinator",
    "PreFetchResults",
    "SchemaMetadata",
    "UniqueConstraint",
    "WriteIntent",
    "audit_log_model",
    "detect_write_intents",
    "ensure_ids",
    "model",
    "plan_lookup",
    "relation",
    "scalar",
    "transactional",
    "validate_options",
]
