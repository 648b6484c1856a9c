"""Planning phase: turn research and answered questions into plan.md."""

from rich.console import Console
from rich.markup import escape

from ..git_actions import finalize_step_git_actions
from ..session import run_agent_step
from ..types import ExecutionContext, StepDefinition, StepResult


console = Console()


async def plan_step(step: StepDefinition, context: ExecutionContext) -> StepResult:
    task = context.task
    files = context.file_manager

    if files.read_plan(task.id) is not None:
        console.print(f"[dim]Plan already exists for {escape(task.id)}[/dim]")
        return StepResult.skipped()

    questions = files.read_questions(task.id)
    # Only a non-empty unanswered list halts; an empty list proceeds even
    # with answered false
    if questions is None or (questions.questions and not questions.is_answered):
        console.print("[yellow]Waiting for answers to the research questions[/yellow]")
        context.emit_status("awaiting_answers", task_id=task.id)
        return StepResult.skipped(halt=True)

    context.emit_status("phase_start", phase="planning")
    prompt = context.prompts.build_planning_prompt(task, files.read_research(task.id), questions)
    content = await run_agent_step(
        context,
        step,
        prompt,
        system_prompt=context.prompts.system_prompt("planning"),
    )
    content = content.strip()

    if content:
        files.write_plan(task.id, content)
    else:
        console.print("[yellow]Planning produced no output[/yellow]")

    await finalize_step_git_actions(context, step, f"Plan for {task.title}")
    context.emit_status("phase_complete", phase="planning")

    if not context.is_cloud_mode:
        return StepResult.completed(halt=True)
    return StepResult.completed()
