"""Public shared error API for the audit packages."""

from . import codes
from .exceptions import (
    AuditConfigurationError,
    AuditError,
    AuditWriteError,
    ConflictingFieldListsError,
    DataClientError,
    EnrichmentError,
    EnrichmentInvariantError,
    EnrichmentTimeoutError,
    InvalidAggregateIdError,
    MissingAuditContextError,
    MissingEntityConfigError,
    RecordNotFoundError,
    UniqueConstraintError,
)
from .factories import (
    configuration_error,
    dependency_error,
    internal_error,
    not_found_error,
    validation_error,
)
from .normalize import exception_to_error
from .types import ErrorCategory, ErrorDetail

__all__ = [
    "AuditConfigurationError",
    "AuditError",
    "AuditWriteError",
    "ConflictingFieldListsError",
    "DataClientError",
    "EnrichmentError",
    "EnrichmentInvariantError",
    "EnrichmentTimeoutError",
    "ErrorCategory",
    "ErrorDetail",
    "InvalidAggregateIdError",
    "MissingAuditContextError",
    "MissingEntityConfigError",
    "RecordNotFoundError",
    "UniqueConstraintError",
    "codes",
    "configuration_error",
    "dependency_error",
    "exception_to_error",
    "internal_error",
    "not_found_error",
    "validation_error",
]
