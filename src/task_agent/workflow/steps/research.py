"""Research phase: analyse the codebase and raise clarifying questions."""

from rich.console import Console
from rich.markup import escape

from ...questions import QuestionsData, auto_answer
from ..git_actions import finalize_step_git_actions
from ..session import run_agent_step
from ..types import ExecutionContext, StepDefinition, StepResult


console = Console()


async def research_step(step: StepDefinition, context: ExecutionContext) -> StepResult:
    task = context.task
    files = context.file_manager

    if files.read_research(task.id) is not None:
        console.print(f"[dim]Research already exists for {escape(task.id)}[/dim]")
        return StepResult.skipped()

    context.emit_status("phase_start", phase="research")
    content = await run_agent_step(
        context,
        step,
        context.prompts.build_research_prompt(task),
        system_prompt=context.prompts.system_prompt("research"),
    )
    content = content.strip()

    if content:
        files.write_research(task.id, content)
        await _extract_questions(context, content)
    else:
        console.print("[yellow]Research produced no output[/yellow]")

    await finalize_step_git_actions(context, step, f"Research phase for {task.title}")

    if not context.is_cloud_mode:
        context.emit_status("phase_complete", phase="research")
        return StepResult.completed(halt=True)

    questions = files.read_questions(task.id)
    if questions and not questions.answered and context.extractor and content:
        answered = await context.extractor.extract_questions_with_answers(content)
        files.write_questions(task.id, auto_answer(answered))
        await finalize_step_git_actions(context, step, f"Answer research questions for {task.title}")
        console.print(f"[green]Auto-answered {len(answered)} research question(s)[/green]")

    context.emit_status("phase_complete", phase="research")
    return StepResult.completed()


async def _extract_questions(context: ExecutionContext, content: str) -> None:
    """Write questions.json from the research text. Failures are only logged."""
    if context.extractor is None:
        console.print("[yellow]No question extractor configured, skipping extraction[/yellow]")
        return

    try:
        questions = await context.extractor.extract_questions(content)
    except Exception as e:
        console.print(f"[yellow]Warning: Question extraction failed: {escape(str(e))}[/yellow]")
        context.emit_status("error", kind="extraction_error", message=str(e))
        return

    context.file_manager.write_questions(context.task.id, QuestionsData(questions=questions))
    context.emit_status("artifact", kind="research_questions", count=len(questions))
    console.print(f"[dim]Extracted {len(questions)} question(s)[/dim]")
