"""Write strategy coordination for finished audit records.

Strategy selection, given the durability flag and the active context:

=====================  ===========================  ==================
durability requested   explicit transaction active  strategy
=====================  ===========================  ==================
yes                    any                          immediate
no                     yes                          deferred
no                     no                           fire-and-forget
=====================  ===========================  ==================

Immediate writes go through the transactional client when one is active.
Deferred closures are appended to the context's queue and later run against
the base client once the transaction commits. Fire-and-forget writes run in a
background task whose failures reach the error handler, never the caller.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Callable, Literal, Sequence

from packages.audit_core.domain import (
    AuditContext,
    AuditRecord,
    DeferredWrite,
    ImmediateWrite,
    SkippedWrite,
    WriteResult,
)
from packages.audit_core.interfaces import AuditLogWriter, DefaultWrite, WriteErrorCallback
from packages.audit_shared.errors import AuditWriteError, exception_to_error
from packages.audit_shared.logging import fields, log_context

logger = logging.getLogger(__name__)

ErrorStrategy = Literal["throw", "log", "ignore"]


class WriteStrategy(str, Enum):
    """Durability mode chosen for one batch of records."""

    IMMEDIATE = "immediate"
    DEFERRED = "deferred"
    FIRE_AND_FORGET = "fire_and_forget"


class WriteErrorHandler:
    """Route audit write failures through the configured error strategy.

    ``propagate`` is true only where raising can reach the caller (immediate
    writes); background and deferred failures are logged under ``"throw"``
    since there is no caller left to receive them.
    """

    def __init__(
        self,
        strategy: ErrorStrategy = "log",
        callback: WriteErrorCallback | None = None,
    ) -> None:
        self._strategy = strategy
        self._callback = callback

    @property
    def strategy(self) -> ErrorStrategy:
        """Return the configured error strategy."""
        return self._strategy

    def handle(
        self,
        error: BaseException,
        operation: str,
        *,
        propagate: bool,
        record_count: int = 0,
    ) -> None:
        """Notify the callback, then log, raise, or ignore per strategy."""
        if self._callback is not None:
            try:
                self._callback(error, operation)
            except Exception:
                logger.exception("audit write error callback failed for %s", operation)

        if self._strategy == "ignore":
            return
        if self._strategy == "throw" and propagate:
            raise AuditWriteError(
                message=f"{operation} failed: {error}",
                operation=operation,
                record_count=record_count,
            ) from error
        detail = exception_to_error(error)
        logger.error(
            "%s failed [%s %s]",
            operation,
            detail.category.value,
            detail.code,
            exc_info=error,
        )


class ClientWriteExecutor:
    """Default persistence: bulk insert into the audit-log model."""

    def __init__(self, audit_log_model: str = "AuditLog") -> None:
        self._audit_log_model = audit_log_model

    @property
    def audit_log_model(self) -> str:
        """Return the model name audit rows are inserted into."""
        return self._audit_log_model

    async def write(self, client: Any, records: Sequence[AuditRecord]) -> None:
        """Insert ``records`` through ``client`` in one round trip."""
        if not records:
            return
        await client.model(self._audit_log_model).create_many(
            data=[record.to_row() for record in records]
        )


class WriteStrategyCoordinator:
    """Choose and run a durability strategy for batches of audit records."""

    def __init__(
        self,
        *,
        base_client: Any,
        executor: ClientWriteExecutor | None = None,
        await_write: bool = True,
        await_write_if: Callable[[str, Sequence[str]], bool] | None = None,
        writer: AuditLogWriter | None = None,
        error_handler: WriteErrorHandler | None = None,
    ) -> None:
        self._base_client = base_client
        self._executor = executor or ClientWriteExecutor()
        self._await_write = await_write
        self._await_write_if = await_write_if
        self._writer = writer
        self._errors = error_handler or WriteErrorHandler()
        self._background: set[asyncio.Task[None]] = set()

    @property
    def error_handler(self) -> WriteErrorHandler:
        """Return the handler used for write failures."""
        return self._errors

    def should_await(self, model: str, tags: Sequence[str]) -> bool:
        """Return whether synchronous durability applies to ``model``.

        The tag predicate only decides for tagged models; untagged models
        use the global flag.
        """
        if self._await_write_if is not None and tags:
            return bool(self._await_write_if(model, tuple(tags)))
        return self._await_write

    def select(self, context: AuditContext, model: str, tags: Sequence[str]) -> WriteStrategy:
        """Select the strategy for the current transaction state."""
        if self.should_await(model, tags):
            return WriteStrategy.IMMEDIATE
        if context.transactional_client is not None:
            return WriteStrategy.DEFERRED
        return WriteStrategy.FIRE_AND_FORGET

    async def write(
        self,
        records: Sequence[AuditRecord],
        context: AuditContext,
        *,
        model: str,
        tags: Sequence[str] = (),
    ) -> WriteResult:
        """Persist ``records`` under the selected strategy."""
        if not records:
            return SkippedWrite(reason="no audit records", skipped_at=datetime.now(UTC))

        strategy = self.select(context, model, tags)
        with log_context({fields.WRITE_STRATEGY: strategy.value}):
            logger.debug("writing %d audit records for %s", len(records), model)
            if strategy is WriteStrategy.IMMEDIATE:
                return await self._write_immediate(records, context)
            if strategy is WriteStrategy.DEFERRED:
                return self._enqueue_deferred(records, context)
            return self._start_background(records, context)

    async def drain_background_writes(self) -> None:
        """Wait for every outstanding fire-and-forget write to finish."""
        while self._background:
            await asyncio.gather(*tuple(self._background), return_exceptions=True)

    def _default_write(self, client: Any) -> DefaultWrite:
        async def default_write(batch: Sequence[AuditRecord]) -> None:
            await self._executor.write(client, batch)

        return default_write

    async def _persist(
        self, records: Sequence[AuditRecord], context: AuditContext, client: Any
    ) -> None:
        default_write = self._default_write(client)
        if self._writer is not None:
            await self._writer(records, context, default_write)
        else:
            await default_write(records)

    async def _write_immediate(
        self, records: Sequence[AuditRecord], context: AuditContext
    ) -> WriteResult:
        client = context.transactional_client or self._base_client
        try:
            await self._persist(records, context, client)
        except Exception as exc:
            self._errors.handle(
                exc, "audit log write", propagate=True, record_count=len(records)
            )
            return SkippedWrite(reason=f"write failed: {exc}", skipped_at=datetime.now(UTC))
        return ImmediateWrite(written_at=datetime.now(UTC))

    def _enqueue_deferred(
        self, records: Sequence[AuditRecord], context: AuditContext
    ) -> WriteResult:
        batch = list(records)

        async def execute() -> None:
            try:
                await self._persist(batch, context, self._base_client)
            except Exception as exc:
                self._errors.handle(
                    exc,
                    "deferred audit log write",
                    propagate=False,
                    record_count=len(batch),
                )

        context.deferred_writes.append(execute)
        return DeferredWrite(queued_at=datetime.now(UTC), execute=execute)

    def _start_background(
        self, records: Sequence[AuditRecord], context: AuditContext
    ) -> WriteResult:
        batch = list(records)

        async def run() -> None:
            try:
                await self._persist(batch, context, self._base_client)
            except Exception as exc:
                self._errors.handle(
                    exc,
                    "async audit log write",
                    propagate=False,
                    record_count=len(batch),
                )

        task = asyncio.get_running_loop().create_task(run())
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return ImmediateWrite(written_at=datetime.now(UTC))
