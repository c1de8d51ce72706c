"""Fault-isolated context enrichment for actors, entities, and aggregates.

Every enricher call races its timeout. A timed-out enricher is not cancelled:
the call keeps running in a shielded task and its eventual result or error is
discarded. Failures follow the enricher's ``on_error`` policy:

- ``"fail"``: raise, failing the host operation.
- ``"log"``: log a warning and return the configured fallback.
- callable: return ``on_error(exc)``; if that returns ``None`` or raises, the
  fallback is used instead.

Batch enrichers must return a list aligned by index with their input; any
other shape raises ``EnrichmentInvariantError`` regardless of policy.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Mapping, Sequence

from packages.audit_core.domain import (
    AuditContext,
    EnricherConfig,
    EnrichmentMeta,
    EntityConfig,
)
from packages.audit_shared.errors import (
    EnrichmentError,
    EnrichmentInvariantError,
    EnrichmentTimeoutError,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 500
BATCH_TIMEOUT_MS = 2000

ACTOR_META = EnrichmentMeta(aggregate_type="Actor", aggregate_category="system")


def _enricher_name(config: EnricherConfig) -> str:
    return getattr(config.enricher, "__qualname__", repr(config.enricher))


def _discard_result(task: asyncio.Task[Any]) -> None:
    """Consume the outcome of an enricher that already timed out."""
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.debug("late enricher failure discarded: %r", exc)


async def _call_with_timeout(
    config: EnricherConfig, payload: Any, client: Any, meta: EnrichmentMeta, timeout_ms: int
) -> Any:
    result = config.enricher(payload, client, meta)
    if not inspect.isawaitable(result):
        return result

    task = asyncio.ensure_future(result)
    try:
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as exc:
        task.add_done_callback(_discard_result)
        raise EnrichmentTimeoutError(
            message=f"enricher {_enricher_name(config)} timed out after {timeout_ms}ms",
            enricher=_enricher_name(config),
            timeout_ms=timeout_ms,
        ) from exc


def _apply_policy(config: EnricherConfig, exc: Exception) -> Any:
    policy = config.on_error
    if policy == "fail":
        if isinstance(exc, EnrichmentError):
            raise exc
        raise EnrichmentError(
            message=f"enricher {_enricher_name(config)} failed: {exc}",
            enricher=_enricher_name(config),
        ) from exc

    if policy == "log":
        logger.warning(
            "enricher %s failed; using fallback",
            _enricher_name(config),
            exc_info=exc,
        )
        return config.fallback

    try:
        handled = policy(exc)
    except Exception:
        logger.warning(
            "custom enricher error handler for %s failed; using fallback",
            _enricher_name(config),
            exc_info=True,
        )
        return config.fallback
    return config.fallback if handled is None else handled


async def execute_enricher(
    config: EnricherConfig | None,
    payload: Any,
    client: Any,
    meta: EnrichmentMeta,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> Any:
    """Run one enricher under its timeout and error policy."""
    if config is None:
        return None
    effective_timeout = config.timeout_ms or timeout_ms
    try:
        return await _call_with_timeout(config, payload, client, meta, effective_timeout)
    except Exception as exc:
        return _apply_policy(config, exc)


async def execute_batch_enricher(
    config: EnricherConfig | None,
    entities: Sequence[Mapping[str, Any]],
    client: Any,
    meta: EnrichmentMeta,
    *,
    timeout_ms: int = BATCH_TIMEOUT_MS,
) -> list[Any]:
    """Run a batch enricher and enforce index alignment with ``entities``."""
    if not entities:
        return []
    if config is None:
        return [None] * len(entities)

    effective_timeout = config.timeout_ms or timeout_ms
    try:
        result = await _call_with_timeout(
            config, list(entities), client, meta, effective_timeout
        )
    except Exception as exc:
        handled = _apply_policy(config, exc)
        result = handled if isinstance(handled, (list, tuple)) else [None] * len(entities)

    _check_alignment(config, result, len(entities))
    return list(result)


def _check_alignment(config: EnricherConfig, result: Any, expected: int) -> None:
    if not isinstance(result, (list, tuple)):
        raise EnrichmentInvariantError(
            message=(
                f"batch enricher {_enricher_name(config)} must return a list, "
                f"got {type(result).__name__}"
            ),
            enricher=_enricher_name(config),
            expected=expected,
            actual=-1,
        )
    if len(result) != expected:
        raise EnrichmentInvariantError(
            message=(
                f"batch enricher {_enricher_name(config)} returned {len(result)} "
                f"contexts for {expected} entities"
            ),
            enricher=_enricher_name(config),
            expected=expected,
            actual=len(result),
        )


async def enrich_actor_context(
    context: AuditContext,
    config: EnricherConfig | None,
    client: Any,
    *,
    timeout_ms: int = DEFAULT_TIMEOUT_MS,
) -> Any:
    """Enrich the acting identity with fixed ``Actor``/``system`` meta."""
    if config is None:
        return None
    return await execute_enricher(
        config, context.actor, client, ACTOR_META, timeout_ms=timeout_ms
    )


async def batch_enrich_entity_contexts(
    entities: Sequence[Mapping[str, Any]],
    entity_config: EntityConfig,
    client: Any,
    meta: EnrichmentMeta,
    *,
    timeout_ms: int = BATCH_TIMEOUT_MS,
) -> list[Any]:
    """Enrich entity contexts in one call (``entity_context`` > ``context``)."""
    return await execute_batch_enricher(
        entity_config.entity_enricher(), entities, client, meta, timeout_ms=timeout_ms
    )


async def batch_enrich_aggregate_contexts(
    entities: Sequence[Mapping[str, Any]],
    entity_config: EntityConfig,
    client: Any,
    meta: EnrichmentMeta,
    *,
    timeout_ms: int = BATCH_TIMEOUT_MS,
) -> list[Any]:
    """Enrich aggregate contexts for one aggregate type in one call."""
    return await execute_batch_enricher(
        entity_config.aggregate_enricher(meta.aggregate_type),
        entities,
        client,
        meta,
        timeout_ms=timeout_ms,
    )
