"""Snapshot serialization for before/after state.

Snapshots are stored in semi-structured JSON columns, so every value is
reduced to JSON-compatible primitives before diffing.
"""

from __future__ import annotations

import json
from datetime import date, datetime, time
from decimal import Decimal
from enum import Enum
from typing import Any, Mapping
from uuid import UUID


def to_json_safe(value: Any) -> Any:
    """Recursively convert a value into JSON-compatible primitives."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, Enum):
        return to_json_safe(value.value)
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).hex()
    if isinstance(value, Mapping):
        return {str(key): to_json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [to_json_safe(item) for item in value]
    return str(value)


def snapshot(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Return a JSON-safe copy of a record, or ``None``."""
    if record is None:
        return None
    return to_json_safe(record)


def json_equal(left: Any, right: Any) -> bool:
    """Compare two values by their canonical JSON encoding."""
    return _canonical(left) == _canonical(right)


def _canonical(value: Any) -> str:
    return json.dumps(to_json_safe(value), sort_keys=True, separators=(",", ":"))


def _is_relation_object(value: Any) -> bool:
    return isinstance(value, Mapping) and "id" in value


def strip_relations(record: Mapping[str, Any] | None) -> dict[str, Any] | None:
    """Drop loaded relation values from a snapshot.

    A relation is a nested mapping carrying an ``id`` or a non-empty list made
    only of such mappings. Scalar JSON columns are kept.
    """
    if record is None:
        return None
    stripped: dict[str, Any] = {}
    for key, value in record.items():
        if _is_relation_object(value):
            continue
        if (
            isinstance(value, list)
            and value
            and all(_is_relation_object(item) for item in value)
        ):
            continue
        stripped[key] = value
    return stripped
