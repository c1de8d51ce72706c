"""Typed configuration models for audit runtime settings."""

from __future__ import annotations

from pathlib import Path
from typing import ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "audit" / "audit.yaml"
ENV_PREFIX = "AUDIT_"


class LoggingSettings(BaseModel):
    """Structured logging configuration for hosts embedding the pipeline."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    audit_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] | None = None
    json_output: bool = True
    service: str = "audit"
    environment: str = "dev"


class EnrichmentSettings(BaseModel):
    """Timeout budget for context enrichers, in milliseconds."""

    default_timeout_ms: int = Field(default=500, gt=0)
    batch_timeout_ms: int = Field(default=2000, gt=0)


class NestedOperationSettings(BaseModel):
    """Global fetch-before defaults for nested update/delete writes."""

    fetch_before_update: bool = True
    fetch_before_delete: bool = True


class AuditBehaviorSettings(BaseModel):
    """Scalar audit behavior knobs loadable from env/YAML.

    Callable hooks (enrichers, writers, tag overrides) are supplied in code on
    ``AuditOptions``; this model only carries values that make sense in a file.
    """

    model_config = ConfigDict(extra="forbid")

    audit_log_model: str = "AuditLog"
    await_write: bool = True
    sampling: float = Field(default=1.0, ge=0.0, le=1.0)
    error_strategy: Literal["throw", "log", "ignore"] = "log"
    exclude_models: tuple[str, ...] = ()
    exclude_fields: tuple[str, ...] = ()
    redact_fields: tuple[str, ...] = ()
    include_relations: bool = False
    nested_operations: NestedOperationSettings = Field(
        default_factory=NestedOperationSettings
    )
    enrichment: EnrichmentSettings = Field(default_factory=EnrichmentSettings)

    @model_validator(mode="after")
    def _reject_exclude_redact_overlap(self) -> "AuditBehaviorSettings":
        """A field cannot be both dropped from diffs and redacted."""
        overlap = sorted(set(self.exclude_fields) & set(self.redact_fields))
        if overlap:
            raise ValueError(
                "fields cannot be both excluded and redacted: " + ", ".join(overlap)
            )
        return self


class AuditStoreSettings(BaseModel):
    """SQLAlchemy audit-log store connection settings."""

    url: str = "sqlite+aiosqlite:///./audit.db"
    echo: bool = False
    pool_pre_ping: bool = True
    table_name: str = "audit_logs"


class AuditSettings(BaseSettings):
    """Root runtime settings resolved from init/env/yaml/defaults sources."""

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        extra="ignore",
        nested_model_default_partial_update=True,
    )

    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    audit: AuditBehaviorSettings = Field(default_factory=AuditBehaviorSettings)
    store: AuditStoreSettings = Field(default_factory=AuditStoreSettings)

    _config_path: ClassVar[Path] = DEFAULT_CONFIG_PATH

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Apply audit precedence: init > env > yaml > model defaults."""
        return (
            init_settings,
            env_settings,
            YamlConfigSettingsSource(
                settings_cls,
                yaml_file=cls._config_path,
                yaml_file_encoding="utf-8",
            ),
        )
