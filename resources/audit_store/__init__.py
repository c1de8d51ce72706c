"""SQLAlchemy-backed audit-log store."""

from .engine import create_audit_engine, create_schema, create_session_factory, session_scope
from .repository import (
    AuditLogRepository,
    InMemoryAuditLogRepository,
    SqlAlchemyAuditLogRepository,
    record_to_row,
    repository_writer,
    row_to_record,
)
from .schema import audit_log_table, audit_logs, metadata
from .store import AuditStore, open_audit_store

__all__ = [
    "AuditLogRepository",
    "AuditStore",
    "InMemoryAuditLogRepository",
    "SqlAlchemyAuditLogRepository",
    "audit_log_table",
    "audit_logs",
    "create_audit_engine",
    "create_schema",
    "create_session_factory",
    "metadata",
    "open_audit_store",
    "record_to_row",
    "repository_writer",
    "row_to_record",
]
