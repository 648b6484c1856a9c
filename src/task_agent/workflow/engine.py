"""Sequential step runner.

Runs an ordered list of steps against one ExecutionContext. A step may skip
(its output already exists or an input is missing) and may halt the rest of
the sequence without raising. Any error stops the workflow and propagates as
StepFailedError naming the step.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from rich.console import Console
from rich.markup import escape

from .types import ExecutionContext, StepDefinition, StepResult, StepStatus


console = Console()


class StepFailedError(Exception):
    """A step raised. Carries the step and the underlying error."""

    def __init__(self, step_id: str, step_name: str, cause: BaseException):
        super().__init__(f"Step '{step_name}' failed: {cause}")
        self.step_id = step_id
        self.step_name = step_name
        self.cause = cause


@dataclass
class WorkflowOutcome:
    results: dict[str, StepResult] = field(default_factory=dict)
    halted: bool = False
    halted_at: Optional[str] = None

    @property
    def completed(self) -> bool:
        return not self.halted


async def run_workflow(steps: list[StepDefinition], context: ExecutionContext) -> WorkflowOutcome:
    """Run steps in order until one halts or all have run."""
    outcome = WorkflowOutcome()

    for index, step in enumerate(steps):
        console.print(f"[bold cyan]{escape(step.name)}[/bold cyan]")
        await context.progress.step_started(step.id, index)

        try:
            result = await step.run(step, context)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            console.print(f"[red]{escape(step.name)} failed: {escape(str(e))}[/red]")
            raise StepFailedError(step.id, step.name, e) from e

        outcome.results[step.id] = result
        skipped = result.status == StepStatus.SKIPPED
        if skipped:
            console.print(f"[dim]{escape(step.name)} skipped[/dim]")
        await context.progress.step_completed(step.id, index + 1, skipped=skipped)

        if result.halt:
            outcome.halted = True
            outcome.halted_at = step.id
            console.print(f"[yellow]Paused after {escape(step.name)}[/yellow]")
            await context.progress.halted(step.id)
            break

    return outcome
