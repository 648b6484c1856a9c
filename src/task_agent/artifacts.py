"""Task artifact storage under the repository's artifact namespace.

Directory structure:
    .taskagent/
    ├── .gitignore              # Keeps scratch files out of task commits
    ├── prompts/                # Optional prompt template overrides
    ├── worktrees/              # Isolated checkouts (ignored)
    └── tasks/
        └── {task_id}/
            ├── research.md
            ├── plan.md
            └── questions.json

An artifact that already exists is the skip signal for the phase producing it.
"""

import json
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from .questions import QuestionsData


console = Console()

RESEARCH_FILE = "research.md"
PLAN_FILE = "plan.md"
QUESTIONS_FILE = "questions.json"

GITIGNORE_CONTENT = """\
# Managed by task-agent
worktrees/
*.log
*.tmp
"""


class TaskFileManager:
    """Reads and writes task-scoped artifacts."""

    def __init__(self, project_path: Path, namespace: str = ".taskagent"):
        self.project_path = Path(project_path)
        self.namespace = namespace
        self.root = self.project_path / namespace
        self.tasks_dir = self.root / "tasks"
        self.prompts_dir = self.root / "prompts"
        self.gitignore_file = self.root / ".gitignore"

    def task_dir(self, task_id: str) -> Path:
        return self.tasks_dir / task_id

    def ensure_task_dir(self, task_id: str) -> Path:
        path = self.task_dir(task_id)
        path.mkdir(parents=True, exist_ok=True)
        return path

    def ensure_gitignore(self) -> bool:
        """Write the namespace .gitignore. Returns True if it was created."""
        if self.gitignore_file.exists():
            return False
        self.root.mkdir(parents=True, exist_ok=True)
        self.gitignore_file.write_text(GITIGNORE_CONTENT, encoding="utf-8")
        return True

    # =========================================================================
    # Generic access
    # =========================================================================

    def write_task_file(self, task_id: str, name: str, content: str) -> Path:
        path = self.ensure_task_dir(task_id) / name
        path.write_text(content, encoding="utf-8")
        return path

    def read_task_file(self, task_id: str, name: str) -> Optional[str]:
        path = self.task_dir(task_id) / name
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def list_task_files(self, task_id: str) -> list[str]:
        path = self.task_dir(task_id)
        if not path.exists():
            return []
        return sorted(p.name for p in path.iterdir() if p.is_file())

    def relative_path(self, task_id: str, name: str) -> str:
        """Repository-relative path of an artifact, for staging."""
        return f"{self.namespace}/tasks/{task_id}/{name}"

    # =========================================================================
    # Phase artifacts
    # =========================================================================

    def read_research(self, task_id: str) -> Optional[str]:
        return self.read_task_file(task_id, RESEARCH_FILE)

    def write_research(self, task_id: str, content: str) -> Path:
        return self.write_task_file(task_id, RESEARCH_FILE, content)

    def read_plan(self, task_id: str) -> Optional[str]:
        return self.read_task_file(task_id, PLAN_FILE)

    def write_plan(self, task_id: str, content: str) -> Path:
        return self.write_task_file(task_id, PLAN_FILE, content)

    def read_questions(self, task_id: str) -> Optional[QuestionsData]:
        """Load questions.json. A corrupt file reads as missing."""
        raw = self.read_task_file(task_id, QUESTIONS_FILE)
        if raw is None:
            return None
        try:
            return QuestionsData.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            console.print(f"[yellow]Warning: Could not load {QUESTIONS_FILE} for {escape(task_id)}: {escape(str(e))}[/yellow]")
            return None

    def write_questions(self, task_id: str, data: QuestionsData) -> Path:
        return self.write_task_file(task_id, QUESTIONS_FILE, data.model_dump_json(indent=2))
