"""Data models for the task execution orchestrator.

Uses Pydantic for validation. Tasks and runs mirror the fields the
orchestrator reads from and writes to the task-tracking service; everything
else on those records is carried along untouched.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


DEFAULT_AGENT_COMMAND = ["npx", "@zed-industries/claude-code-acp"]


class TaskRunStatus(str, Enum):
    """Status of one execution attempt."""
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class PermissionMode(str, Enum):
    """How much the agent may do without asking."""
    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS = "bypassPermissions"


class TaskRun(BaseModel):
    """One execution attempt of a task."""
    model_config = ConfigDict(extra="allow")

    id: str
    task: Optional[str] = Field(default=None, description="Id of the task this run belongs to")
    status: TaskRunStatus = Field(default=TaskRunStatus.STARTED)
    branch: Optional[str] = None
    log: list[dict[str, Any]] = Field(default_factory=list)
    output: Optional[dict[str, Any]] = Field(
        default=None,
        description="Structured output, e.g. {'pr_url': ...}"
    )
    state: dict[str, Any] = Field(default_factory=dict)
    error_message: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (TaskRunStatus.COMPLETED, TaskRunStatus.FAILED)


class Task(BaseModel):
    """A unit of requested work owned by the tracking service."""
    model_config = ConfigDict(extra="allow")

    id: str
    title: str = ""
    description: str = ""
    slug: Optional[str] = None
    primary_repository: Optional[str] = Field(
        default=None,
        description="Repository reference, e.g. 'org/repo'"
    )
    latest_run: Optional[TaskRun] = None

    @property
    def task_slug(self) -> str:
        """Identifier used in branch names."""
        return self.slug or self.id

    def existing_pr_url(self) -> Optional[str]:
        """PR URL recorded on the latest run, if any."""
        if self.latest_run and self.latest_run.output:
            url = self.latest_run.output.get("pr_url")
            if isinstance(url, str) and url:
                return url
        return None


class AgentConfig(BaseModel):
    """Configuration for the orchestrator."""
    # Agent process
    agent_command: list[str] = Field(
        default_factory=lambda: list(DEFAULT_AGENT_COMMAND),
        description="Command that starts an ACP-speaking agent on stdio"
    )
    agent_env: dict[str, str] = Field(
        default_factory=dict,
        description="Extra environment variables for the agent process"
    )
    mcp_servers: dict[str, dict[str, Any]] = Field(
        default_factory=dict,
        description="Tool providers handed to every session, keyed by name"
    )
    terminal_output_limit: int = Field(
        default=1024 * 1024,
        description="Bytes of terminal output kept per terminal"
    )

    # Models per phase (None = agent default)
    research_model: Optional[str] = None
    planning_model: Optional[str] = None
    build_model: Optional[str] = None

    # Repository layout
    branch_prefix: str = Field(default="tasks", description="Task branches are '<prefix>/<slug>'")
    artifact_namespace: str = Field(
        default=".taskagent",
        description="Directory (relative to the repo) holding task artifacts"
    )
    author_name: Optional[str] = Field(default=None, description="Commit author name override")
    author_email: Optional[str] = Field(default=None, description="Commit author email override")

    # Task-tracking service
    api_url: Optional[str] = None
    api_key: Optional[str] = None
    project_id: Optional[str] = None
    api_timeout_seconds: float = Field(default=30.0)

    debug: bool = Field(default=False, description="Echo protocol and git chatter to the console")


class TaskExecutionOptions(BaseModel):
    """Per-run switches."""
    is_cloud_mode: bool = Field(
        default=False,
        description="Cloud runs answer questions automatically and never pause for review"
    )
    permission_mode: Optional[PermissionMode] = Field(
        default=None,
        description="Overrides the build phase's permission mode"
    )
    create_pull_request: bool = Field(default=True)
    base_branch: Optional[str] = Field(
        default=None,
        description="Branch to open the pull request against (default branch when unset)"
    )
