"""Ambient audit context propagation.

The active ``AuditContext`` lives in a ``ContextVar``. ``asyncio`` copies the
current context into every task it creates, so concurrently interleaved
operations started from different scopes never observe each other's actor or
transaction state, and a nested scope restores its parent on exit, including
when the body raises.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Awaitable, Callable, Iterator, TypeVar

from packages.audit_core.domain import AuditContext
from packages.audit_shared.errors import MissingAuditContextError

T = TypeVar("T")


class AuditContextProvider:
    """Get/run access to the audit context bound to the current task."""

    def __init__(self, name: str = "audit_context") -> None:
        self._var: ContextVar[AuditContext | None] = ContextVar(name, default=None)

    def get(self) -> AuditContext | None:
        """Return the active context, or ``None`` outside any scope."""
        return self._var.get()

    def use(self) -> AuditContext:
        """Return the active context or raise when none is bound."""
        context = self._var.get()
        if context is None:
            raise MissingAuditContextError(
                message="no audit context is active; wrap the call in provider.run_async()"
            )
        return context

    @contextmanager
    def scope(self, context: AuditContext) -> Iterator[AuditContext]:
        """Bind ``context`` for the duration of a block."""
        token = self._var.set(context)
        try:
            yield context
        finally:
            self._var.reset(token)

    def run(self, context: AuditContext, fn: Callable[[], T]) -> T:
        """Call a synchronous function with ``context`` bound."""
        with self.scope(context):
            return fn()

    async def run_async(
        self, context: AuditContext, fn: Callable[[], Awaitable[T]]
    ) -> T:
        """Await an async function with ``context`` bound."""
        with self.scope(context):
            return await fn()
