"""Include injection for nested writes.

Nested after-state is read from the mutation's own result, so every relation
touched by the write-intent tree is added to the caller's ``include``. The
caller's own include flags are never narrowed, and relations the caller did
not ask for are pruned from the result before it is returned.
"""

from __future__ import annotations

from typing import Any, Mapping

from packages.audit_orm.intents import WriteIntent

IncludeTree = dict[str, Any]


def build_include(intents: tuple[WriteIntent, ...]) -> IncludeTree:
    """Return the include tree mirroring ``intents``."""
    tree: IncludeTree = {}
    for intent in intents:
        nested: IncludeTree = {}
        for children in intent.children.values():
            nested = merge_include(nested, build_include(children))
        current = tree.get(intent.field_name)
        entry: Any = {"include": nested} if nested else True
        tree[intent.field_name] = _merge_entry(current, entry) if current is not None else entry
    return tree


def _sub_include(entry: Any) -> IncludeTree:
    if isinstance(entry, Mapping):
        return dict(entry.get("include") or {})
    return {}


def _merge_entry(current: Any, injected: Any) -> Any:
    if not current:
        return injected
    if isinstance(current, Mapping) and "select" in current:
        return current
    merged_sub = merge_include(_sub_include(current), _sub_include(injected))
    if not merged_sub:
        return current if isinstance(current, Mapping) else True
    result = dict(current) if isinstance(current, Mapping) else {}
    result["include"] = merged_sub
    return result


def merge_include(caller: Mapping[str, Any] | None, injected: Mapping[str, Any]) -> IncludeTree:
    """Return ``caller`` widened with every relation in ``injected``."""
    merged: IncludeTree = dict(caller or {})
    for key, entry in injected.items():
        merged[key] = _merge_entry(merged.get(key), entry)
    return merged


def prune_result(
    result: Any, caller: Mapping[str, Any] | None, injected: Mapping[str, Any]
) -> Any:
    """Drop relations from ``result`` that only the injected include requested."""
    if isinstance(result, list):
        return [prune_result(item, caller, injected) for item in result]
    if not isinstance(result, dict):
        return result
    pruned = dict(result)
    for key, entry in injected.items():
        requested = (caller or {}).get(key)
        if not requested:
            pruned.pop(key, None)
            continue
        if key in pruned and isinstance(requested, Mapping) and "select" in requested:
            continue
        if key in pruned:
            pruned[key] = prune_result(pruned[key], _sub_include(requested), _sub_include(entry))
    return pruned
