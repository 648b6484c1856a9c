"""Workflow engine: ordered phase steps over a shared execution context.

- run_workflow: runs steps in order with skip/halt semantics
- default_workflow: the research, planning and build phases
- ExecutionContext / CancellationHandle: per-task state and the live session slot
"""

from .definition import default_workflow
from .engine import StepFailedError, WorkflowOutcome, run_workflow
from .types import (
    CancellationHandle,
    ExecutionContext,
    StepDefinition,
    StepResult,
    StepResults,
    StepStatus,
    TaskCancelledError,
)

__all__ = [
    "default_workflow",
    "run_workflow",
    "StepFailedError",
    "WorkflowOutcome",
    "CancellationHandle",
    "ExecutionContext",
    "StepDefinition",
    "StepResult",
    "StepResults",
    "StepStatus",
    "TaskCancelledError",
]
