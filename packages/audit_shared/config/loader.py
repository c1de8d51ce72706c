"""Settings loading with deterministic precedence.

The cascade is always:
1) CLI/init params
2) Environment variables
3) ~/.config/audit/audit.yaml
4) Model defaults

Environment variable format:
- Prefix: ``AUDIT_``
- Nested keys: ``__`` separator
- Example: ``AUDIT_AUDIT__AWAIT_WRITE=false`` -> ``audit.await_write = False``

An explicit ``environ`` mapping replaces ``os.environ`` so callers and tests
can resolve settings without mutating process state.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Mapping

from pydantic_settings import (
    BaseSettings,
    InitSettingsSource,
    PydanticBaseSettingsSource,
    YamlConfigSettingsSource,
)

from .models import DEFAULT_CONFIG_PATH, ENV_PREFIX, AuditSettings


def load_settings(
    *,
    cli_params: Mapping[str, Any] | None = None,
    environ: Mapping[str, str] | None = None,
    config_path: str | Path | None = None,
) -> AuditSettings:
    """Resolve ``AuditSettings`` by applying the standard precedence cascade."""
    env_data = _load_env_config(
        environ=environ if environ is not None else os.environ,
        prefix=ENV_PREFIX,
    )
    yaml_path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    class _ResolvedAuditSettings(AuditSettings):
        @classmethod
        def settings_customise_sources(
            cls,
            settings_cls: type[BaseSettings],
            init_settings: PydanticBaseSettingsSource,
            env_settings: PydanticBaseSettingsSource,
            dotenv_settings: PydanticBaseSettingsSource,
            file_secret_settings: PydanticBaseSettingsSource,
        ) -> tuple[PydanticBaseSettingsSource, ...]:
            return (
                init_settings,
                InitSettingsSource(settings_cls, init_kwargs=env_data),
                YamlConfigSettingsSource(
                    settings_cls,
                    yaml_file=yaml_path,
                    yaml_file_encoding="utf-8",
                ),
            )

    return _ResolvedAuditSettings(**dict(cli_params or {}))


def _load_env_config(*, environ: Mapping[str, str], prefix: str) -> dict[str, Any]:
    """Extract and map prefixed environment variables into nested config."""
    output: dict[str, Any] = {}

    for key, raw_value in environ.items():
        if not key.startswith(prefix):
            continue

        remainder = key[len(prefix) :]
        path = [
            segment.strip().lower()
            for segment in remainder.split("__")
            if segment.strip()
        ]
        if not path:
            continue

        _set_nested(output, path, _coerce_scalar(raw_value))

    return output


def _set_nested(target: dict[str, Any], path: list[str], value: Any) -> None:
    """Set a nested mapping value by path, creating intermediate dicts."""
    cursor: dict[str, Any] = target
    for segment in path[:-1]:
        child = cursor.get(segment)
        if not isinstance(child, dict):
            child = {}
            cursor[segment] = child
        cursor = child
    cursor[path[-1]] = value


def _coerce_scalar(raw: str) -> Any:
    """Coerce JSON-looking env strings into lists/mappings.

    Scalars stay strings; pydantic validation coerces them to the field type.
    """
    value = raw.strip()
    if value.startswith("{") or value.startswith("["):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return raw
    return raw
