"""Public logging API for the audit packages.

Thin wrapper over Python's ``logging`` with stdout emission and structured
context propagation for audited operations.
"""

from .config import ContextFilter, JsonFormatter, PlainFormatter, configure_logging, get_logger
from .context import (
    bind_context,
    clear_context,
    get_context,
    log_context,
    operation_log_context,
)

__all__ = [
    "bind_context",
    "clear_context",
    "configure_logging",
    "ContextFilter",
    "get_context",
    "get_logger",
    "JsonFormatter",
    "log_context",
    "operation_log_context",
    "PlainFormatter",
]
