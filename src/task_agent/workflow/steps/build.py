"""Build phase: let the agent implement the plan, then reconcile commits."""

from rich.console import Console
from rich.markup import escape

from ..session import run_agent_step
from ..types import ExecutionContext, StepDefinition, StepResult


console = Console()


async def build_step(step: StepDefinition, context: ExecutionContext) -> StepResult:
    task = context.task

    pr_url = task.existing_pr_url()
    if pr_url:
        console.print(f"[dim]Pull request already open: {escape(pr_url)}[/dim]")
        return StepResult.skipped()

    context.emit_status("phase_start", phase="build")
    tracker = context.git.track_operation()

    await run_agent_step(
        context,
        step,
        context.prompts.build_execution_prompt(task),
        system_prompt=context.prompts.system_prompt("execution"),
        permission_mode=context.options.permission_mode,
    )

    commit_created, pushed = False, False
    if step.commit:
        result = tracker.finalize(f"Implement task: {task.title}", push=step.push)
        commit_created, pushed = result.commit_created, result.pushed_branch
        if commit_created:
            context.emit_status("commit_made", step=step.id, sha=result.sha, pushed=pushed)
            await context.progress.commit_made(step.id, result.sha)
        else:
            console.print("[yellow]Build made no changes[/yellow]")

    context.step_results.record(step.id, {"commit_created": commit_created, "pushed_branch": pushed})
    context.emit_status("phase_complete", phase="build")
    return StepResult.completed()
