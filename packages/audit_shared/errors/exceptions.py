"""Typed exceptions raised by the audit packages.

Every class carries a stable ``code`` and ``category`` so
``exception_to_error`` can normalize it without per-class branches.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import ClassVar, Mapping

from . import codes
from .types import ErrorCategory


@dataclass(eq=False)
class AuditError(Exception):
    """Base error type for audit pipeline failures."""

    message: str

    code: ClassVar[str] = codes.INTERNAL_ERROR
    category: ClassVar[ErrorCategory] = ErrorCategory.INTERNAL
    retryable: ClassVar[bool] = False

    def __str__(self) -> str:
        """Return the human-readable error message."""
        return self.message


@dataclass(eq=False)
class AuditConfigurationError(AuditError, ValueError):
    """Fatal configuration problem detected while setting up auditing."""

    code: ClassVar[str] = codes.CONFIGURATION_ERROR
    category: ClassVar[ErrorCategory] = ErrorCategory.CONFIGURATION


@dataclass(eq=False)
class ConflictingFieldListsError(AuditConfigurationError):
    """A field appears in both an exclude list and a redact list."""

    fields: tuple[str, ...] = ()
    scope: str = "global"

    code: ClassVar[str] = codes.CONFLICTING_FIELD_LISTS


@dataclass(eq=False)
class MissingEntityConfigError(AuditConfigurationError):
    """A batch operation targets a model that has no entity configuration."""

    model: str = ""
    operation: str = ""

    code: ClassVar[str] = codes.MISSING_ENTITY_CONFIG


@dataclass(eq=False)
class MissingAuditContextError(AuditError, LookupError):
    """No audit context is active where one is required."""

    code: ClassVar[str] = codes.MISSING_AUDIT_CONTEXT
    category: ClassVar[ErrorCategory] = ErrorCategory.VALIDATION


@dataclass(eq=False)
class InvalidAggregateIdError(AuditError, ValueError):
    """An aggregate or entity id could not be normalized."""

    code: ClassVar[str] = codes.INVALID_AGGREGATE_ID
    category: ClassVar[ErrorCategory] = ErrorCategory.VALIDATION


@dataclass(eq=False)
class EnrichmentError(AuditError):
    """Context enrichment failed under the ``fail`` policy."""

    enricher: str = ""

    code: ClassVar[str] = codes.ENRICHMENT_FAILED
    category: ClassVar[ErrorCategory] = ErrorCategory.DEPENDENCY
    retryable: ClassVar[bool] = True


@dataclass(eq=False)
class EnrichmentTimeoutError(EnrichmentError):
    """Context enrichment did not finish within its timeout."""

    timeout_ms: int = 0

    code: ClassVar[str] = codes.ENRICHMENT_TIMEOUT


@dataclass(eq=False)
class EnrichmentInvariantError(EnrichmentError):
    """A batch enricher broke index alignment with its input."""

    expected: int = 0
    actual: int = 0

    code: ClassVar[str] = codes.INVARIANT_VIOLATION
    category: ClassVar[ErrorCategory] = ErrorCategory.INTERNAL
    retryable: ClassVar[bool] = False


@dataclass(eq=False)
class AuditWriteError(AuditError):
    """Persisting audit records failed under the ``throw`` strategy."""

    operation: str = ""
    record_count: int = 0

    code: ClassVar[str] = codes.AUDIT_WRITE_FAILED
    category: ClassVar[ErrorCategory] = ErrorCategory.DEPENDENCY
    retryable: ClassVar[bool] = True


@dataclass(eq=False)
class DataClientError(AuditError):
    """Base error for data-client failures raised by the in-memory client."""

    model: str = ""

    code: ClassVar[str] = codes.DEPENDENCY_FAILURE
    category: ClassVar[ErrorCategory] = ErrorCategory.DEPENDENCY


@dataclass(eq=False)
class RecordNotFoundError(DataClientError, LookupError):
    """A point operation matched no record."""

    where: Mapping[str, object] = field(default_factory=dict)

    code: ClassVar[str] = codes.RECORD_NOT_FOUND
    category: ClassVar[ErrorCategory] = ErrorCategory.NOT_FOUND


@dataclass(eq=False)
class UniqueConstraintError(DataClientError):
    """A write would duplicate a unique key."""

    fields: tuple[str, ...] = ()

    code: ClassVar[str] = codes.UNIQUE_CONSTRAINT_VIOLATION
    category: ClassVar[ErrorCategory] = ErrorCategory.CONFLICT
