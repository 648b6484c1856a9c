"""Run progress persisted to the task-tracking service.

Best-effort by contract: every failure is printed as a warning and swallowed
so progress reporting can never break a task execution.
"""

from datetime import datetime
from typing import Any, Optional, Union

from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from .acp.notifications import (
    AgentEvent, PlanUpdate, SessionNotification, StatusEvent, ToolCall, ToolCallUpdate,
)
from .models import TaskRun, TaskRunStatus
from .protocols import TaskStore
from .task_api import TaskAPIError


console = Console()

MAX_LINE_LENGTH = 160


def _truncate(text: str, max_len: int = MAX_LINE_LENGTH) -> str:
    compact = " ".join(text.split())
    return compact if len(compact) <= max_len else compact[:max_len] + "..."


class TaskProgressReporter:
    """Mirrors the run lifecycle onto a TaskRun record."""

    def __init__(self, api: Optional[TaskStore] = None, total_steps: Optional[int] = None):
        self.api = api
        self.total_steps = total_steps
        self.task_id: Optional[str] = None
        self.run: Optional[TaskRun] = None
        self.lines: list[str] = []
        self._last_line: Optional[str] = None

    @property
    def run_id(self) -> Optional[str]:
        return self.run.id if self.run else None

    @property
    def active(self) -> bool:
        return self.api is not None and self.run is not None

    async def start(self, task_id: str) -> Optional[TaskRun]:
        """Create the run record. Returns None when there is no API or it failed."""
        self.task_id = task_id
        if self.api is None:
            return None
        try:
            self.run = await self.api.create_task_run(task_id)
        except (TaskAPIError, ValidationError) as e:
            console.print(f"[yellow]Warning: Could not create task run for {escape(task_id)}: {escape(str(e))}[/yellow]")
            return None
        return self.run

    async def step_started(self, step_id: str, index: int) -> None:
        await self._update(
            {"status": TaskRunStatus.IN_PROGRESS, "state": {"current_step": step_id, "completed_steps": index}},
            f"Step started: {step_id}",
        )

    async def step_completed(self, step_id: str, completed: int, skipped: bool = False) -> None:
        verb = "skipped" if skipped else "completed"
        await self._update(
            {"state": {"current_step": step_id, "completed_steps": completed}},
            f"Step {verb}: {step_id}",
        )

    async def branch_created(self, branch: str, created: bool = True) -> None:
        verb = "created" if created else "resumed"
        await self._update({"branch": branch}, f"Branch {verb}: {branch}")

    async def commit_made(self, step_id: str, sha: Optional[str] = None) -> None:
        suffix = f" {sha[:8]}" if sha else ""
        await self.log(f"Commit made ({step_id}){suffix}")

    async def pull_request_created(self, url: str) -> bool:
        """Attach the PR URL to the run output. Returns False if that failed."""
        return await self._update({"output": {"pr_url": url}}, f"Pull request created: {url}")

    async def halted(self, step_id: str) -> None:
        await self.log(f"Execution paused after '{step_id}'")

    async def complete(self) -> None:
        await self._update({"status": TaskRunStatus.COMPLETED}, "Task execution completed")

    async def fail(self, error: Union[BaseException, str]) -> None:
        message = str(error)
        await self._update(
            {"status": TaskRunStatus.FAILED, "error_message": message},
            f"Task execution failed: {message}",
        )

    async def log(self, line: str) -> None:
        await self._update({}, line)

    async def record_event(self, event: AgentEvent) -> None:
        """Summarise an agent event into one log line, or drop it."""
        line = self.summarize(event)
        if line:
            await self.log(line)

    @staticmethod
    def summarize(event: AgentEvent) -> Optional[str]:
        if isinstance(event, StatusEvent):
            if event.status == "error":
                return f"[error] {event.data.get('message', '')}".rstrip()
            # Phase, branch and PR changes have dedicated updates
            return None

        if not isinstance(event, SessionNotification):
            return None

        update = event.update
        if isinstance(update, ToolCall):
            return f"[tool] {_truncate(update.title or update.tool_call_id)}"
        if isinstance(update, ToolCallUpdate) and update.status == "failed":
            return f"[tool] {_truncate(update.title or update.tool_call_id)} failed"
        if isinstance(update, PlanUpdate) and update.entries:
            done = sum(1 for entry in update.entries if entry.status == "completed")
            return f"[plan] {done}/{len(update.entries)} entries completed"
        # Message chunks and everything else are too chatty to persist
        return None

    async def _update(self, fields: dict[str, Any], line: Optional[str] = None) -> bool:
        new_line = line is not None and line != self._last_line
        if new_line:
            self.lines.append(line)
            self._last_line = line

        if not self.active:
            return False

        try:
            if fields:
                self.run = await self.api.update_task_run(self.task_id, self.run.id, **fields)
            if new_line:
                entry = {"type": "info", "message": line, "ts": datetime.now().isoformat()}
                self.run = await self.api.append_task_run_log(self.task_id, self.run.id, [entry])
        except (TaskAPIError, ValidationError) as e:
            console.print(f"[yellow]Warning: Could not update task run {escape(self.run.id)}: {escape(str(e))}[/yellow]")
            return False
        return True
