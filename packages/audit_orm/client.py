"""Audited client facade.

``AuditedClient`` wraps any ``DataClient``. Reads pass straight through;
mutations run through the lifecycle pipeline unless auditing is skipped:

- no audit context is active;
- the target is the audit-log model itself;
- the model is listed in ``exclude_models``;
- the context is already persisting audit records (recursion guard);
- a single-record operation targets a model without entity configuration;
- sampling rejects the operation.

A batch operation on a model without entity configuration is a
configuration error, not a skip.
"""

from __future__ import annotations

import copy
import logging
import random
from dataclasses import replace
from typing import Any, AsyncContextManager, Callable, Mapping, Sequence

from packages.audit_core.context import AuditContextProvider
from packages.audit_core.domain import AuditContext, Operation
from packages.audit_core.records import AuditRecordBuilder
from packages.audit_core.redaction import Redactor
from packages.audit_core.write_strategies import (
    ClientWriteExecutor,
    WriteErrorHandler,
    WriteStrategyCoordinator,
)
from packages.audit_orm.config import AuditOptions, validate_options
from packages.audit_orm.lifecycle import LifecyclePipeline, LifecycleServices
from packages.audit_orm.nested import NestedOperationBuilder
from packages.audit_orm.prefetch import PreFetchCoordinator
from packages.audit_orm.schema import SchemaMetadata
from packages.audit_orm.transaction import transactional
from packages.audit_shared.errors import MissingEntityConfigError
from packages.audit_shared.logging import operation_log_context

logger = logging.getLogger(__name__)


class AuditedClient:
    """Data client whose mutations produce audit records."""

    def __init__(
        self,
        base: Any,
        options: AuditOptions,
        *,
        provider: AuditContextProvider | None = None,
        schema: SchemaMetadata | None = None,
        random_source: Callable[[], float] = random.random,
    ) -> None:
        self._schema = schema if schema is not None else base.schema
        validate_options(options, self._schema)
        self._base = base
        self._client = base
        self._options = options
        self._provider = provider or AuditContextProvider()
        self._random = random_source
        self._coordinator = WriteStrategyCoordinator(
            base_client=base,
            executor=ClientWriteExecutor(options.audit_log_model),
            await_write=options.await_write,
            await_write_if=options.await_write_if,
            writer=options.writer,
            error_handler=WriteErrorHandler(options.error_strategy, options.error_handler),
        )
        self._pipeline = LifecyclePipeline(
            LifecycleServices(
                schema=self._schema,
                options=options,
                base_client=base,
                provider=self._provider,
                record_builder=AuditRecordBuilder(
                    exclude_fields=options.exclude_fields,
                    redactor=Redactor(options.redact_fields),
                    include_relations=options.include_relations,
                    aggregate_timeout_ms=options.batch_enrichment_timeout_ms,
                ),
                prefetcher=PreFetchCoordinator(
                    self._schema, fetch_before=options.fetch_before, id_key=options.id_key
                ),
                nested_builder=NestedOperationBuilder(
                    self._schema, fetch_before=options.fetch_before, id_key=options.id_key
                ),
                coordinator=self._coordinator,
            )
        )

    @property
    def provider(self) -> AuditContextProvider:
        """Return the context provider this client reads the actor from."""
        return self._provider

    @property
    def options(self) -> AuditOptions:
        """Return the audit options in effect."""
        return self._options

    @property
    def schema(self) -> SchemaMetadata:
        """Return the schema metadata for the wrapped client."""
        return self._schema

    @property
    def base(self) -> Any:
        """Return the non-transactional client underneath."""
        return self._base

    @property
    def coordinator(self) -> WriteStrategyCoordinator:
        """Return the write strategy coordinator."""
        return self._coordinator

    def model(self, name: str) -> "AuditedModelDelegate":
        """Return the audited delegate for ``name``."""
        return AuditedModelDelegate(self, name)

    def transaction(self) -> AsyncContextManager["AuditedClient"]:
        """Open a transaction yielding an audited client bound to it."""
        return transactional(
            self._client.transaction, provider=self._provider, wrap=self._bind
        )()

    async def drain(self) -> None:
        """Wait for outstanding fire-and-forget audit writes."""
        await self._coordinator.drain_background_writes()

    def _bind(self, tx: Any) -> "AuditedClient":
        bound = copy.copy(self)
        bound._client = tx
        return bound

    def _skip_reason(
        self, model: str, operation: Operation, context: AuditContext
    ) -> str | None:
        if model == self._options.audit_log_model:
            return "audit log model"
        if self._options.is_excluded(model):
            return "model excluded"
        if context.processing_audit_log:
            return "already writing audit records"
        if self._options.entity_config(model) is None:
            if operation.is_batch:
                raise MissingEntityConfigError(
                    message=f"{operation.value} on {model} requires an entity configuration",
                    model=model,
                    operation=operation.value,
                )
            return "model not configured"
        rate = self._options.sampling_rate(model)
        if rate < 1.0 and self._random() >= rate:
            return "sampled out"
        return None

    def _needs_implicit_transaction(self, model: str, context: AuditContext) -> bool:
        return (
            self._coordinator.should_await(model, self._options.tags_for(model))
            and context.transactional_client is None
            and not context.in_implicit_transaction
        )

    async def _mutate(self, model: str, operation: Operation, args: Mapping[str, Any]) -> Any:
        context = self._provider.get()
        if context is None:
            return await self._pass_through(model, operation, args, "no audit context")
        reason = self._skip_reason(model, operation, context)
        if reason is not None:
            return await self._pass_through(model, operation, args, reason)

        with operation_log_context(
            model=model,
            operation=operation.value,
            actor_id=context.actor.id,
            actor_type=context.actor.type,
        ):
            if not self._needs_implicit_transaction(model, context):
                return await self._run(model, operation, args, self._client, context)
            async with self._client.transaction() as tx:
                derived = replace(
                    context, transactional_client=tx, in_implicit_transaction=True
                )
                with self._provider.scope(derived):
                    return await self._run(model, operation, args, tx, derived)

    async def _pass_through(
        self, model: str, operation: Operation, args: Mapping[str, Any], reason: str
    ) -> Any:
        logger.debug("audit skipped for %s.%s: %s", model, operation.value, reason)
        delegate = self._client.model(model)
        return await getattr(delegate, operation.value)(**args)

    async def _run(
        self,
        model: str,
        operation: Operation,
        args: Mapping[str, Any],
        client: Any,
        context: AuditContext,
    ) -> Any:
        state = await self._pipeline.run(
            model=model,
            operation=operation,
            args=args,
            client=client,
            context=context,
            entity_config=self._options.entity_config(model),
        )
        return state.result


class AuditedModelDelegate:
    """Per-model view whose mutations are audited."""

    def __init__(self, client: AuditedClient, model: str) -> None:
        self._client = client
        self._model = model

    @property
    def name(self) -> str:
        """Return the model name."""
        return self._model

    def _raw(self) -> Any:
        return self._client._client.model(self._model)

    async def find_unique(self, *, where: Mapping[str, Any], **kwargs: Any) -> Any:
        return await self._raw().find_unique(where=where, **kwargs)

    async def find_first(self, **kwargs: Any) -> Any:
        return await self._raw().find_first(**kwargs)

    async def find_many(self, **kwargs: Any) -> Any:
        return await self._raw().find_many(**kwargs)

    async def create(self, *, data: Mapping[str, Any], **kwargs: Any) -> Any:
        return await self._client._mutate(
            self._model, Operation.CREATE, {"data": data, **kwargs}
        )

    async def create_many(self, *, data: Sequence[Mapping[str, Any]]) -> Any:
        return await self._client._mutate(
            self._model, Operation.CREATE_MANY, {"data": list(data)}
        )

    async def update(
        self, *, where: Mapping[str, Any], data: Mapping[str, Any], **kwargs: Any
    ) -> Any:
        return await self._client._mutate(
            self._model, Operation.UPDATE, {"where": where, "data": data, **kwargs}
        )

    async def update_many(
        self, *, data: Mapping[str, Any], where: Mapping[str, Any] | None = None
    ) -> Any:
        return await self._client._mutate(
            self._model, Operation.UPDATE_MANY, {"where": where, "data": data}
        )

    async def upsert(
        self,
        *,
        where: Mapping[str, Any],
        create: Mapping[str, Any],
        update: Mapping[str, Any],
        **kwargs: Any,
    ) -> Any:
        return await self._client._mutate(
            self._model,
            Operation.UPSERT,
            {"where": where, "create": create, "update": update, **kwargs},
        )

    async def delete(self, *, where: Mapping[str, Any], **kwargs: Any) -> Any:
        return await self._client._mutate(
            self._model, Operation.DELETE, {"where": where, **kwargs}
        )

    async def delete_many(self, *, where: Mapping[str, Any] | None = None) -> Any:
        return await self._client._mutate(
            self._model, Operation.DELETE_MANY, {"where": where}
        )
