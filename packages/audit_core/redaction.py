"""Sensitive-field redaction for snapshots and change sets.

Redaction runs after diffing, on a deep copy, and replaces a sensitive value
with a content-free marker:

- plain value: ``{"redacted": True, "had_value": True}`` or ``None``
- change entry: ``{"old": marker | None, "new": marker + is_different | None}``

Markers are recognized on the way in, so redacting twice is a no-op.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable, Mapping

from packages.audit_core.serialization import json_equal

DEFAULT_SENSITIVE_FIELDS: frozenset[str] = frozenset(
    {
        "password",
        "password_hash",
        "passwordHash",
        "hashed_password",
        "hashedPassword",
        "salt",
        "token",
        "access_token",
        "accessToken",
        "refresh_token",
        "refreshToken",
        "api_key",
        "apiKey",
        "secret",
        "secret_key",
        "secretKey",
        "private_key",
        "privateKey",
        "ssn",
        "social_security_number",
        "socialSecurityNumber",
        "credit_card",
        "creditCard",
        "card_number",
        "cardNumber",
        "cvv",
        "pin",
    }
)


def is_sensitive_field(name: str, extra_fields: Iterable[str] = ()) -> bool:
    """Return whether ``name`` is redacted by default or by configuration."""
    return name in DEFAULT_SENSITIVE_FIELDS or name in set(extra_fields)


def _is_marker(value: Any) -> bool:
    return isinstance(value, Mapping) and value.get("redacted") is True


def _is_change_entry(value: Any) -> bool:
    return isinstance(value, Mapping) and "old" in value and "new" in value


def _redact_value(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    return {"redacted": True, "had_value": True}


def _redact_change(entry: Mapping[str, Any]) -> dict[str, Any]:
    old = entry["old"]
    new = entry["new"]
    if _is_marker(new) and "is_different" in new:
        is_different = bool(new["is_different"])
    else:
        is_different = not json_equal(old, new)
    return {
        "old": None if old is None else {"redacted": True, "had_value": True},
        "new": (
            None
            if new is None
            else {"redacted": True, "had_value": True, "is_different": is_different}
        ),
    }


class Redactor:
    """Recursive redactor over mappings and lists."""

    def __init__(self, fields: Iterable[str] = ()) -> None:
        self._fields = DEFAULT_SENSITIVE_FIELDS | frozenset(fields)

    @property
    def fields(self) -> frozenset[str]:
        """Return the full sensitive-field set in effect."""
        return self._fields

    def redact(self, data: Any) -> Any:
        """Return a redacted deep copy of ``data``."""
        if data is None:
            return None
        return self._walk(copy.deepcopy(data))

    def _walk(self, data: Any) -> Any:
        if isinstance(data, list):
            return [self._walk(item) for item in data]
        if not isinstance(data, dict):
            return data
        result: dict[str, Any] = {}
        for key, value in data.items():
            if key in self._fields:
                result[key] = (
                    _redact_change(value) if _is_change_entry(value) else _redact_value(value)
                )
            elif isinstance(value, (dict, list)):
                result[key] = self._walk(value)
            else:
                result[key] = value
        return result


def redact_sensitive(data: Any, fields: Iterable[str] = ()) -> Any:
    """Redact ``data`` with the default sensitive set plus ``fields``."""
    return Redactor(fields).redact(data)
