"""Code-level audit options and their validation.

``AuditOptions`` carries everything a host passes in code: entity
configurations, enrichers, writer and error hooks. Plain values can be
seeded from the file/env-backed ``AuditBehaviorSettings`` via
``AuditOptions.from_settings``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Callable, Mapping, Sequence

from packages.audit_core.domain import EnricherConfig, EntityConfig
from packages.audit_core.enrichment import BATCH_TIMEOUT_MS, DEFAULT_TIMEOUT_MS
from packages.audit_core.interfaces import AuditLogWriter, WriteErrorCallback
from packages.audit_core.write_strategies import ErrorStrategy
from packages.audit_orm.schema import SchemaMetadata
from packages.audit_shared.config import AuditBehaviorSettings, AuditSettings
from packages.audit_shared.errors import (
    AuditConfigurationError,
    ConflictingFieldListsError,
)

TagPredicate = Callable[[str, Sequence[str]], bool]
TagRate = Callable[[str, Sequence[str]], float]


@dataclass(frozen=True)
class AuditOptions:
    """Complete audit configuration for one audited client.

    ``entities`` maps model names to their ``EntityConfig``. Models without
    an entry are not audited (single-record operations) or rejected (batch
    operations). Models named in ``exclude_models`` are never audited and
    never rejected, configured or not.
    """

    entities: Mapping[str, EntityConfig] = field(default_factory=dict)
    audit_log_model: str = "AuditLog"
    await_write: bool = True
    await_write_if: TagPredicate | None = None
    sampling: float = 1.0
    sampling_if: TagRate | None = None
    error_strategy: ErrorStrategy = "log"
    exclude_models: tuple[str, ...] = ()
    error_handler: WriteErrorCallback | None = None
    writer: AuditLogWriter | None = None
    exclude_fields: tuple[str, ...] = ()
    redact_fields: tuple[str, ...] = ()
    include_relations: bool = False
    fetch_before_update: bool = True
    fetch_before_delete: bool = True
    actor_context: EnricherConfig | None = None
    enrichment_timeout_ms: int = DEFAULT_TIMEOUT_MS
    batch_enrichment_timeout_ms: int = BATCH_TIMEOUT_MS
    id_key: str = "id"

    @classmethod
    def from_settings(
        cls,
        settings: AuditSettings | AuditBehaviorSettings,
        **overrides: Any,
    ) -> "AuditOptions":
        """Seed options from runtime settings; ``overrides`` win."""
        behavior = settings.audit if isinstance(settings, AuditSettings) else settings
        seeded = cls(
            audit_log_model=behavior.audit_log_model,
            await_write=behavior.await_write,
            sampling=behavior.sampling,
            error_strategy=behavior.error_strategy,
            exclude_models=tuple(behavior.exclude_models),
            exclude_fields=tuple(behavior.exclude_fields),
            redact_fields=tuple(behavior.redact_fields),
            include_relations=behavior.include_relations,
            fetch_before_update=behavior.nested_operations.fetch_before_update,
            fetch_before_delete=behavior.nested_operations.fetch_before_delete,
            enrichment_timeout_ms=behavior.enrichment.default_timeout_ms,
            batch_enrichment_timeout_ms=behavior.enrichment.batch_timeout_ms,
        )
        return replace(seeded, **overrides)

    def is_excluded(self, model: str) -> bool:
        """Return whether ``model`` is opted out of auditing entirely."""
        return model in self.exclude_models

    def entity_config(self, model: str) -> EntityConfig | None:
        """Return the configuration for ``model``, if audited."""
        return self.entities.get(model)

    def tags_for(self, model: str) -> tuple[str, ...]:
        """Return the tags declared on ``model``'s configuration."""
        config = self.entity_config(model)
        return config.tags if config is not None else ()

    def fetch_before(self, model: str, operation: str) -> bool:
        """Return whether nested ``operation`` on ``model`` reads its before state.

        Priority: per-model override, then the global default.
        """
        config = self.entity_config(model)
        if config is not None and operation in config.nested_operations:
            return bool(config.nested_operations[operation])
        if operation == "delete":
            return self.fetch_before_delete
        return self.fetch_before_update

    def sampling_rate(self, model: str) -> float:
        """Return the effective sampling rate for ``model``."""
        tags = self.tags_for(model)
        if self.sampling_if is not None and tags:
            return float(self.sampling_if(model, tags))
        return self.sampling


def validate_options(options: AuditOptions, schema: SchemaMetadata | None = None) -> None:
    """Reject configurations that cannot produce a consistent audit trail."""
    if not 0.0 <= options.sampling <= 1.0:
        raise AuditConfigurationError(
            message=f"sampling must be within [0, 1], got {options.sampling}"
        )
    if options.error_strategy not in ("throw", "log", "ignore"):
        raise AuditConfigurationError(
            message=f"unknown error strategy: {options.error_strategy}"
        )

    redacted = set(options.redact_fields)
    overlap = tuple(sorted(set(options.exclude_fields) & redacted))
    if overlap:
        raise ConflictingFieldListsError(
            message="fields cannot be both excluded and redacted: " + ", ".join(overlap),
            fields=overlap,
            scope="global",
        )

    for model, config in options.entities.items():
        if config.exclude_fields is None:
            continue
        overlap = tuple(sorted(set(config.exclude_fields) & redacted))
        if overlap:
            raise ConflictingFieldListsError(
                message=(
                    f"{model}: fields cannot be both excluded and redacted: "
                    + ", ".join(overlap)
                ),
                fields=overlap,
                scope=model,
            )

    if schema is None:
        return
    for model in options.entities:
        if not schema.has_model(model):
            raise AuditConfigurationError(
                message=f"entity configuration references unknown model: {model}"
            )
    for model in options.exclude_models:
        if not schema.has_model(model):
            raise AuditConfigurationError(message=f"excluded model is not declared: {model}")
    if options.writer is None and not schema.has_model(options.audit_log_model):
        raise AuditConfigurationError(
            message=(
                f"audit log model {options.audit_log_model} is not declared; "
                "declare it or supply a custom writer"
            )
        )

