"""Transaction decorator binding audit context to a caller-managed transaction.

``transactional`` wraps a data client's ``transaction()`` entry point once.
While the transaction is open, the active audit context carries the
transactional client and a deferred-write queue. Queued writes run in FIFO
order after the outermost transaction commits, against the base client. If
the block raises, the transaction rolls back and the queue is discarded
unexecuted.

A transaction opened inside another one shares the outer queue and never
drains it itself. When the inner block raises, only the writes it queued are
dropped.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from typing import Any, AsyncContextManager, AsyncIterator, Callable

from packages.audit_core.context import AuditContextProvider

logger = logging.getLogger(__name__)

TransactionEntry = Callable[[], AsyncContextManager[Any]]


def transactional(
    entry: TransactionEntry,
    *,
    provider: AuditContextProvider,
    wrap: Callable[[Any], Any] | None = None,
) -> TransactionEntry:
    """Return ``entry`` decorated with audit context handling.

    ``wrap`` turns the raw transactional client into what the caller receives
    (typically an audited client bound to it).
    """

    @asynccontextmanager
    async def transaction() -> AsyncIterator[Any]:
        parent = provider.get()
        queue: list[Any] = []
        outermost = True
        if parent is not None and parent.in_explicit_transaction:
            queue = parent.deferred_writes
            outermost = False
        mark = len(queue)
        async with entry() as tx:
            handle = wrap(tx) if wrap is not None else tx
            if parent is None:
                yield handle
            else:
                derived = replace(
                    parent,
                    transactional_client=tx,
                    in_implicit_transaction=False,
                    deferred_writes=queue,
                )
                try:
                    with provider.scope(derived):
                        yield handle
                except BaseException:
                    dropped = len(queue) - mark
                    if dropped:
                        logger.debug(
                            "transaction rolled back; discarding %d deferred audit writes",
                            dropped,
                        )
                    del queue[mark:]
                    raise

        if not outermost:
            return
        for execute in list(queue):
            await execute()
        if queue:
            logger.debug("drained %d deferred audit writes after commit", len(queue))

    return transaction
