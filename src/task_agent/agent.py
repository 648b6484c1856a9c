"""Task agent - the entry point for running a task end to end.

Owns one task execution at a time against one working directory:
1. Resolve (or create) the task branch
2. Run the research -> plan -> build workflow
3. Open a pull request once the workflow completes without pausing
4. Mirror every step onto the task's run record

Concurrent tasks need separate working trees (see GitManager.create_worktree),
each with its own TaskAgent.
"""

import asyncio
from pathlib import Path
from typing import Any, Callable, Optional, Union

from pydantic import BaseModel, Field
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel

from .acp.client import AcpClient
from .acp.notifications import AgentEvent, SessionNotification, StatusEvent, ToolCall
from .artifacts import TaskFileManager
from .git_manager import GitManager
from .models import AgentConfig, Task, TaskExecutionOptions, TaskRunStatus
from .progress import TaskProgressReporter
from .prompts import PromptBuilder
from .protocols import TaskStore
from .questions import MarkdownQuestionExtractor, QuestionExtractor
from .task_api import TaskAPIClient
from .workflow import (
    CancellationHandle, ExecutionContext, StepDefinition, default_workflow, run_workflow,
)


console = Console()

EventHandler = Callable[[AgentEvent], None]
WorkflowFactory = Callable[..., list[StepDefinition]]


class TaskExecutionResult(BaseModel):
    """Summary of one run_task() call."""
    task_id: str
    run_id: Optional[str] = None
    branch: str
    branch_created: bool = False
    status: TaskRunStatus
    halted: bool = False
    halted_at: Optional[str] = None
    pr_url: Optional[str] = None
    step_results: dict[str, Any] = Field(default_factory=dict)


class TaskAgent:
    """Runs tasks through the phase workflow in one repository."""

    def __init__(
        self,
        working_directory: Path,
        config: Optional[AgentConfig] = None,
        on_event: Optional[EventHandler] = None,
        extractor: Optional[QuestionExtractor] = None,
        api: Optional[TaskStore] = None,
        workflow_factory: WorkflowFactory = default_workflow,
        client_factory: Optional[Callable[[], AcpClient]] = None,
    ):
        self.working_directory = Path(working_directory).resolve()
        self.config = config or AgentConfig()
        self.on_event = on_event
        self.extractor = extractor if extractor is not None else MarkdownQuestionExtractor()
        self.workflow_factory = workflow_factory
        self.client_factory = client_factory

        self._owns_api = api is None
        self.api = api if api is not None else self._api_from_config(self.config)

        self.git = GitManager(
            self.working_directory,
            branch_prefix=self.config.branch_prefix,
            artifact_namespace=self.config.artifact_namespace,
            author_name=self.config.author_name,
            author_email=self.config.author_email,
            debug=self.config.debug,
        )
        self.file_manager = TaskFileManager(self.working_directory, self.config.artifact_namespace)
        self.prompts = PromptBuilder(self.file_manager)
        self.cancellation = CancellationHandle()

        self._running = False
        self._progress: Optional[TaskProgressReporter] = None
        self._log_tasks: set[asyncio.Task] = set()

    @staticmethod
    def _api_from_config(config: AgentConfig) -> Optional[TaskAPIClient]:
        if config.api_url and config.api_key and config.project_id:
            return TaskAPIClient(
                config.api_url,
                config.api_key,
                config.project_id,
                timeout=config.api_timeout_seconds,
            )
        return None

    @property
    def is_running(self) -> bool:
        return self._running

    async def __aenter__(self) -> "TaskAgent":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_api and isinstance(self.api, TaskAPIClient):
            await self.api.aclose()

    # =========================================================================
    # Task service passthroughs
    # =========================================================================

    def _require_api(self) -> TaskStore:
        if self.api is None:
            raise RuntimeError("Task API not configured (set api_url, api_key and project_id)")
        return self.api

    async def fetch_task(self, task_id: str) -> Task:
        return await self._require_api().fetch_task(task_id)

    async def list_tasks(self, filters: Optional[dict[str, str]] = None) -> list[Task]:
        return await self._require_api().list_tasks(filters)

    # =========================================================================
    # Execution
    # =========================================================================

    async def run_task(
        self,
        task_or_id: Union[Task, str],
        options: Optional[TaskExecutionOptions] = None,
    ) -> TaskExecutionResult:
        """Run the workflow for a task on its branch.

        Errors mark the run failed and propagate. Branches and commits made
        before the failure are left in place so a rerun resumes from them.
        """
        if self._running:
            raise RuntimeError("A task is already running in this working directory")

        options = options or TaskExecutionOptions()
        task = task_or_id if isinstance(task_or_id, Task) else await self.fetch_task(task_or_id)

        self._running = True
        progress = TaskProgressReporter(self.api)
        self._progress = progress

        console.print(Panel(
            f"[bold]{escape(task.title or task.id)}[/bold]\n"
            f"[dim]Task {escape(task.id)} · {'cloud' if options.is_cloud_mode else 'local'} mode[/dim]",
            title="Task Agent"
        ))

        try:
            await progress.start(task.id)
            branch, created = self._prepare_branch(task)
            await progress.branch_created(branch, created)

            context = ExecutionContext(
                task=task,
                cwd=self.working_directory,
                config=self.config,
                options=options,
                file_manager=self.file_manager,
                git=self.git,
                prompts=self.prompts,
                progress=progress,
                extractor=self.extractor,
                emit=self._emit,
                cancellation=self.cancellation,
                client_factory=self.client_factory,
            )
            steps = self.workflow_factory(self.config, push=options.is_cloud_mode)
            progress.total_steps = len(steps)

            outcome = await run_workflow(steps, context)

            pr_url = task.existing_pr_url()
            status = TaskRunStatus.IN_PROGRESS
            if not outcome.halted:
                if pr_url is None and options.create_pull_request:
                    pr_url = self._open_pull_request(task, branch, options.base_branch)
                    await progress.pull_request_created(pr_url)
                await progress.complete()
                status = TaskRunStatus.COMPLETED
                console.print(f"[green]Task {escape(task.id)} completed[/green]")

            return TaskExecutionResult(
                task_id=task.id,
                run_id=progress.run_id,
                branch=branch,
                branch_created=created,
                status=status,
                halted=outcome.halted,
                halted_at=outcome.halted_at,
                pr_url=pr_url,
                step_results=context.step_results.as_dict(),
            )
        except Exception as e:
            console.print(f"[red]Task {escape(task.id)} failed: {escape(str(e))}[/red]")
            self._emit(StatusEvent(status="error", data={"message": str(e)}))
            await progress.fail(e)
            raise
        finally:
            await self._flush_logs()
            self._running = False
            self._progress = None

    async def cancel_task(self) -> bool:
        """Cancel whichever agent session is live. Returns False if none is."""
        cancelled = await self.cancellation.cancel()
        if cancelled:
            console.print("[yellow]Cancellation requested[/yellow]")
        return cancelled

    def _prepare_branch(self, task: Task) -> tuple[str, bool]:
        recorded = task.latest_run.branch if task.latest_run else None
        branch, created = self.git.get_or_create_task_branch(task.task_slug, recorded)

        if created:
            console.print(f"[green]Created branch {escape(branch)}[/green]")
            if self.file_manager.ensure_gitignore():
                self.git.add_all([f"{self.config.artifact_namespace}/.gitignore"])
                self.git.commit(f"Initialize {self.config.artifact_namespace} for task {task.id}")
        else:
            console.print(f"[dim]Resuming on {escape(branch)}[/dim]")

        self._emit(StatusEvent(status="branch_created" if created else "branch_resumed", data={"branch": branch}))
        return branch, created

    def _open_pull_request(self, task: Task, branch: str, base: Optional[str]) -> str:
        body = (
            "## Task Details\n"
            f"**Task ID**: {task.id}\n"
            f"**Description**: {task.description}\n\n"
            "## Changes\n"
            "This PR implements the changes described in the task.\n"
        )
        pr_url = self.git.create_pull_request(branch, task.title or f"Task {task.id}", body, base=base)
        console.print(f"[green]Pull request: {escape(pr_url)}[/green]")
        self._emit(StatusEvent(status="pr_created", data={"url": pr_url}))
        return pr_url

    # =========================================================================
    # Events
    # =========================================================================

    def _emit(self, event: AgentEvent) -> None:
        if isinstance(event, SessionNotification) and isinstance(event.update, ToolCall):
            console.print(f"[dim]  -> {escape(event.update.title or event.update.tool_call_id)}[/dim]")

        if self.on_event is not None:
            try:
                self.on_event(event)
            except Exception as e:
                console.print(f"[yellow]Event handler failed: {escape(str(e))}[/yellow]")

        if self._progress is not None and self._progress.active:
            task = asyncio.get_running_loop().create_task(self._progress.record_event(event))
            self._log_tasks.add(task)
            task.add_done_callback(self._log_tasks.discard)

    async def _flush_logs(self) -> None:
        if self._log_tasks:
            await asyncio.gather(*list(self._log_tasks), return_exceptions=True)
