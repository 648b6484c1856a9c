"""Prompt construction for each phase.

Templates are markdown files formatted with str.format. A project can
override any of them by dropping a file with the same name into
`<namespace>/prompts/`.
"""

from datetime import date
from pathlib import Path
from typing import Optional

from .artifacts import TaskFileManager
from .models import Task
from .questions import QuestionsData


PACKAGE_PROMPTS_DIR = Path(__file__).parent / "prompts"


class PromptBuilder:
    """Builds the system and user prompts for research, planning and build."""

    def __init__(self, file_manager: TaskFileManager):
        self.file_manager = file_manager

    def load_template(self, name: str) -> str:
        """Load a prompt template from the prompts directory.

        Args:
            name: Template name (without extension)

        Returns:
            Template content as string

        Raises:
            FileNotFoundError: If template not found
        """
        local = self.file_manager.prompts_dir / f"{name}.md"
        if local.exists():
            return local.read_text(encoding="utf-8")

        packaged = PACKAGE_PROMPTS_DIR / f"{name}.md"
        if packaged.exists():
            return packaged.read_text(encoding="utf-8")

        raise FileNotFoundError(f"Prompt template not found: {name}")

    def system_prompt(self, phase: str) -> str:
        return self.load_template(f"{phase}_system").strip()

    def _task_header(self, task: Task) -> str:
        header = f"## Current Task\n\n**Task**: {task.title}\n**Description**: {task.description}"
        if task.primary_repository:
            header += f"\n**Repository**: {task.primary_repository}"
        return header

    def build_research_prompt(self, task: Task) -> str:
        return self.load_template("research").format(task_header=self._task_header(task)).strip()

    def build_plan_template(self, task: Task) -> str:
        return self.load_template("plan_template").format(
            task_id=task.id,
            task_title=task.title,
            task_description=task.description,
            repository=task.primary_repository or "",
            date=date.today().isoformat(),
        ).strip()

    def build_planning_prompt(
        self,
        task: Task,
        research: Optional[str] = None,
        questions: Optional[QuestionsData] = None,
    ) -> str:
        """Planning prompt with research findings and the chosen answers."""
        research_context = ""
        if research:
            research_context += f"## Research Analysis\n\n{research.strip()}\n\n"

        if questions and questions.questions:
            research_context += "## Implementation Decisions\n\n"
            for question in questions.questions:
                research_context += f"### {question.question}\n\n"
                answer = questions.answer_for(question.id)
                if answer:
                    research_context += f"**Selected:** {answer.selected_option}\n"
                    if answer.custom_input:
                        research_context += f"**Details:** {answer.custom_input}\n"
                else:
                    research_context += "**Selected:** Not answered\n"
                research_context += "\n"

        return self.load_template("planning").format(
            task_header=self._task_header(task),
            research_context=research_context,
            plan_template=self.build_plan_template(task),
        ).strip()

    def build_execution_prompt(self, task: Task) -> str:
        """Build prompt including the plan and research when they exist."""
        plan = self.file_manager.read_plan(task.id)
        research = self.file_manager.read_research(task.id)

        context = ""
        if plan or research:
            context += "\n## Context and Supporting Information"
            if plan:
                context += f"\n\n### Execution Plan\n{plan.strip()}"
            if research:
                context += f"\n\n### Research\n{research.strip()}"
            context += "\n"

        if plan:
            instructions = (
                "Implement the changes described in the execution plan above. Follow the plan "
                "step by step and make the necessary file modifications. You must actually edit "
                "files; do not just analyze or review."
            )
        else:
            instructions = (
                "Implement the changes described in the task above. You must actually edit "
                "files; do not just analyze or review."
            )

        return self.load_template("execution").format(
            task_header=self._task_header(task),
            context=context,
            instructions=instructions,
        ).strip()
