"""Lifecycle pipelines for single-record and batch operations."""

from .pipeline import (
    CREATE_MANY_STAGES,
    DELETE_MANY_STAGES,
    SINGLE_STAGES,
    UPDATE_MANY_STAGES,
    LifecyclePipeline,
    run_stages,
    stages_for,
)
from .state import LifecycleServices, OperationState

__all__ = [
    "CREATE_MANY_STAGES",
    "DELETE_MANY_STAGES",
    "LifecyclePipeline",
    "LifecycleServices",
    "OperationState",
    "SINGLE_STAGES",
    "UPDATE_MANY_STAGES",
    "run_stages",
    "stages_for",
]
