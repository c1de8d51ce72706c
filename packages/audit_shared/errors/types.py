"""Canonical shared error shapes for the audit packages.

``ErrorDetail`` is the transport-agnostic description of a failure, used when
an error handler or host service needs a stable machine-readable summary of an
audit failure instead of the raw exception.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping


class ErrorCategory(str, Enum):
    """High-level error categories for audit failures."""

    UNSPECIFIED = "unspecified"
    VALIDATION = "validation"
    CONFIGURATION = "configuration"
    CONFLICT = "conflict"
    NOT_FOUND = "not_found"
    DEPENDENCY = "dependency"
    INTERNAL = "internal"


@dataclass(frozen=True)
class ErrorDetail:
    """Structured error object handed to error handlers and diagnostics."""

    code: str
    message: str
    category: ErrorCategory
    retryable: bool = False
    metadata: Mapping[str, str] = field(default_factory=dict)
