"""Commit/push handling shared by the phase steps."""

from typing import Optional

from rich.console import Console
from rich.markup import escape

from ..git_manager import CommitResult
from .types import ExecutionContext, StepDefinition


console = Console()


async def finalize_step_git_actions(
    context: ExecutionContext,
    step: StepDefinition,
    message: str,
) -> Optional[CommitResult]:
    """Stage the artifact namespace and commit it per the step's flags.

    Returns None when the step does not commit. A CommitResult with
    created=False means nothing was staged.
    """
    if not step.commit:
        return None

    context.git.add_namespace()
    result = context.git.commit(message, push=step.push)

    if result.created:
        console.print(f"[green]Committed: {escape(message)}[/green]")
        context.emit_status("commit_made", step=step.id, sha=result.sha, pushed=result.pushed)
        await context.progress.commit_made(step.id, result.sha)
    else:
        console.print(f"[dim]{escape(step.name)}: nothing to commit[/dim]")
    return result
