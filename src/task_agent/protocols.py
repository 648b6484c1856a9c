"""Protocol definitions for dependency injection.

The workflow talks to git, the artifact store and the tracking service only
through these interfaces, so tests can hand in mock implementations.
"""

from typing import Any, Optional, Protocol, runtime_checkable

from .models import Task, TaskRun, TaskRunStatus
from .questions import QuestionsData


@runtime_checkable
class GitOperations(Protocol):
    """The subset of GitManager the workflow steps use."""

    def add_namespace(self) -> None:
        """Stage the task artifact namespace."""
        ...

    def add_all(self, paths: list[str]) -> None:
        ...

    def has_uncommitted_changes(self) -> bool:
        ...

    def has_staged_changes(self) -> bool:
        ...

    def commit(self, message: str, allow_empty: bool = False, push: bool = False) -> Any:
        """Commit staged changes; a no-op result when nothing is staged."""
        ...

    def track_operation(self) -> Any:
        """Return a CommitTracker capturing the current HEAD."""
        ...

    def get_current_branch(self) -> str:
        ...


@runtime_checkable
class ArtifactStore(Protocol):
    """Read/write named task artifacts. An existing artifact means skip."""

    def read_research(self, task_id: str) -> Optional[str]:
        ...

    def write_research(self, task_id: str, content: str) -> Any:
        ...

    def read_plan(self, task_id: str) -> Optional[str]:
        ...

    def write_plan(self, task_id: str, content: str) -> Any:
        ...

    def read_questions(self, task_id: str) -> Optional[QuestionsData]:
        ...

    def write_questions(self, task_id: str, data: QuestionsData) -> Any:
        ...


@runtime_checkable
class TaskStore(Protocol):
    """Task-tracking service operations the orchestrator consumes."""

    async def fetch_task(self, task_id: str) -> Task:
        ...

    async def list_tasks(self, filters: Optional[dict[str, str]] = None) -> list[Task]:
        ...

    async def create_task_run(self, task_id: str, status: TaskRunStatus = TaskRunStatus.STARTED) -> TaskRun:
        ...

    async def update_task_run(self, task_id: str, run_id: str, **fields: Any) -> TaskRun:
        ...

    async def append_task_run_log(self, task_id: str, run_id: str, entries: list[dict[str, Any]]) -> TaskRun:
        ...
