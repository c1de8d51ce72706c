"""Shared error code constants.

Machine-readable codes attached to ``ErrorDetail`` values and to the audit
exception classes.
"""

# Validation
VALIDATION_ERROR = "VALIDATION_ERROR"
INVALID_ARGUMENT = "INVALID_ARGUMENT"
INVALID_AGGREGATE_ID = "INVALID_AGGREGATE_ID"

# Configuration
CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
CONFLICTING_FIELD_LISTS = "CONFLICTING_FIELD_LISTS"
MISSING_ENTITY_CONFIG = "MISSING_ENTITY_CONFIG"

# Context
MISSING_AUDIT_CONTEXT = "MISSING_AUDIT_CONTEXT"

# Not found / conflict
NOT_FOUND = "NOT_FOUND"
RECORD_NOT_FOUND = "RECORD_NOT_FOUND"
CONFLICT = "CONFLICT"
UNIQUE_CONSTRAINT_VIOLATION = "UNIQUE_CONSTRAINT_VIOLATION"

# Dependency / external system
DEPENDENCY_FAILURE = "DEPENDENCY_FAILURE"
DEPENDENCY_TIMEOUT = "DEPENDENCY_TIMEOUT"
ENRICHMENT_FAILED = "ENRICHMENT_FAILED"
ENRICHMENT_TIMEOUT = "ENRICHMENT_TIMEOUT"
AUDIT_WRITE_FAILED = "AUDIT_WRITE_FAILED"

# Internal
INTERNAL_ERROR = "INTERNAL_ERROR"
INVARIANT_VIOLATION = "INVARIANT_VIOLATION"
UNEXPECTED_EXCEPTION = "UNEXPECTED_EXCEPTION"
