"""Field-level change calculation between two snapshots."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

from packages.audit_core.serialization import json_equal


def calculate_changes(
    before: Mapping[str, Any] | None,
    after: Mapping[str, Any] | None,
    exclude_fields: Iterable[str] = (),
) -> dict[str, dict[str, Any]] | None:
    """Return ``{field: {"old": .., "new": ..}}`` or ``None`` when unchanged.

    Keys are the union of both snapshots minus excluded fields. A key missing
    on one side compares as ``None``. When either snapshot is absent there is
    nothing to compare and the result is ``None``, so an unknown prior state
    is never reported as nullified fields.
    """
    if before is None or after is None:
        return None
    excluded = set(exclude_fields)
    before_map = before
    after_map = after

    keys = [key for key in before_map if key not in excluded]
    keys.extend(key for key in after_map if key not in excluded and key not in before_map)

    changes: dict[str, dict[str, Any]] = {}
    for key in keys:
        old = before_map.get(key)
        new = after_map.get(key)
        if not json_equal(old, new):
            changes[key] = {"old": old, "new": new}

    return changes or None
