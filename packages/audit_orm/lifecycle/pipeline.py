"""Ordered stage lists and the runner that folds state through them."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Mapping, Sequence

from packages.audit_core.domain import AuditContext, EntityConfig, Operation
from packages.audit_orm.lifecycle import batch, stages
from packages.audit_orm.lifecycle.state import LifecycleServices, OperationState
from packages.audit_shared.logging import fields, log_context

logger = logging.getLogger(__name__)

Stage = Callable[[OperationState, LifecycleServices], Awaitable[OperationState]]

SINGLE_STAGES: tuple[Stage, ...] = (
    stages.fetch_before,
    stages.execute,
    stages.enrich,
    stages.build,
    stages.write,
)

CREATE_MANY_STAGES: tuple[Stage, ...] = (
    batch.prepare_ids,
    batch.execute_batch,
    batch.collect_created,
    batch.enrich_batch,
    batch.build_batch,
    stages.write,
)

UPDATE_MANY_STAGES: tuple[Stage, ...] = (
    batch.fetch_batch_before,
    batch.execute_batch,
    batch.collect_updated,
    batch.enrich_batch,
    batch.build_batch,
    stages.write,
)

DELETE_MANY_STAGES: tuple[Stage, ...] = (
    batch.fetch_batch_before,
    batch.execute_batch,
    batch.collect_deleted,
    batch.enrich_batch,
    batch.build_batch,
    stages.write,
)

_STAGES_BY_OPERATION: dict[Operation, tuple[Stage, ...]] = {
    Operation.CREATE: SINGLE_STAGES,
    Operation.UPDATE: SINGLE_STAGES,
    Operation.UPSERT: SINGLE_STAGES,
    Operation.DELETE: SINGLE_STAGES,
    Operation.CREATE_MANY: CREATE_MANY_STAGES,
    Operation.UPDATE_MANY: UPDATE_MANY_STAGES,
    Operation.DELETE_MANY: DELETE_MANY_STAGES,
}


def stages_for(operation: Operation) -> tuple[Stage, ...]:
    """Return the ordered stages that handle ``operation``."""
    return _STAGES_BY_OPERATION[Operation(operation)]


async def run_stages(
    stage_list: Sequence[Stage], state: OperationState, services: LifecycleServices
) -> OperationState:
    """Fold ``state`` through each stage in order."""
    for stage in stage_list:
        with log_context({fields.STAGE: stage.__name__}):
            state = await stage(state, services)
    return state


class LifecyclePipeline:
    """Run intercepted mutations through their lifecycle."""

    def __init__(self, services: LifecycleServices) -> None:
        self._services = services

    @property
    def services(self) -> LifecycleServices:
        """Return the collaborators every run shares."""
        return self._services

    async def run(
        self,
        *,
        model: str,
        operation: Operation,
        args: Mapping[str, Any],
        client: Any,
        context: AuditContext,
        entity_config: EntityConfig | None,
    ) -> OperationState:
        """Execute one operation with auditing and return the final state."""
        state = OperationState(
            model=model,
            operation=Operation(operation),
            args=args,
            context=context,
            client=client,
            entity_config=entity_config,
        )
        final = await run_stages(stages_for(state.operation), state, self._services)
        logger.debug(
            "audited %s.%s: %d records, %s",
            model,
            state.operation.value,
            len(final.records),
            final.write_result.kind if final.write_result else "no write",
        )
        return final
