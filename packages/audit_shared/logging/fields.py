"""Canonical logging field names for audit pipeline logs.

These constants define the stable key set bound into the structured logging
context while an audited operation runs, so every log line emitted by nested
stages carries the same correlation fields.
"""

TIMESTAMP = "timestamp"
LEVEL = "level"
LOGGER = "logger"
MESSAGE = "message"

# Audited operation fields.
AUDIT_MODEL = "audit_model"
AUDIT_OPERATION = "audit_operation"
AUDIT_PATH = "audit_path"
ACTOR_ID = "actor_id"
ACTOR_TYPE = "actor_type"
WRITE_STRATEGY = "write_strategy"
STAGE = "stage"

# Common service-level fields.
SERVICE = "service"
ENVIRONMENT = "environment"
