"""Table model for persisted audit records.

Semi-structured columns use ``JSON(none_as_null=True)``: a Python ``None``
becomes SQL ``NULL`` (absent value), while JSON ``null`` nested inside a
document, such as a field nullified in ``changes``, is stored as-is.
"""

from __future__ import annotations

from sqlalchemy import JSON, Column, DateTime, Index, MetaData, String, Table

metadata = MetaData()


def _json() -> JSON:
    return JSON(none_as_null=True)


def audit_log_table(name: str = "audit_logs", target: MetaData | None = None) -> Table:
    """Build the audit-log table under ``name``."""
    table = Table(
        name,
        target if target is not None else MetaData(),
        Column("id", String(26), primary_key=True),
        Column("actor_category", String(64), nullable=False),
        Column("actor_type", String(128), nullable=False),
        Column("actor_id", String(255), nullable=False),
        Column("actor_context", _json(), nullable=True),
        Column("entity_category", String(64), nullable=False),
        Column("entity_type", String(128), nullable=False),
        Column("entity_id", String(255), nullable=False),
        Column("entity_context", _json(), nullable=True),
        Column("aggregate_category", String(64), nullable=False),
        Column("aggregate_type", String(128), nullable=False),
        Column("aggregate_id", String(255), nullable=False),
        Column("aggregate_context", _json(), nullable=True),
        Column("action", String(16), nullable=False),
        Column("before", _json(), nullable=True),
        Column("after", _json(), nullable=True),
        Column("changes", _json(), nullable=True),
        Column("request_context", _json(), nullable=True),
        Column("created_at", DateTime(timezone=True), nullable=False),
    )
    Index(f"ix_{name}_entity", table.c.entity_type, table.c.entity_id)
    Index(f"ix_{name}_aggregate", table.c.aggregate_type, table.c.aggregate_id)
    return table


audit_logs = audit_log_table("audit_logs", metadata)
