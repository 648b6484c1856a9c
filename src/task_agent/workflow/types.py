"""Types shared by the workflow engine and its steps."""

from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterator, Optional

from ..acp.notifications import AgentEvent, StatusEvent
from ..models import AgentConfig, PermissionMode, Task, TaskExecutionOptions
from ..progress import TaskProgressReporter
from ..prompts import PromptBuilder
from ..protocols import ArtifactStore, GitOperations
from ..questions import QuestionExtractor

if TYPE_CHECKING:
    from ..acp.client import AcpClient


class TaskCancelledError(Exception):
    """The agent turn ended because the task was cancelled."""


class StepStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass
class StepResult:
    """What a step did and whether the workflow should stop after it."""
    status: StepStatus
    halt: bool = False

    @classmethod
    def completed(cls, halt: bool = False) -> "StepResult":
        return cls(StepStatus.COMPLETED, halt)

    @classmethod
    def skipped(cls, halt: bool = False) -> "StepResult":
        return cls(StepStatus.SKIPPED, halt)


StepRunner = Callable[["StepDefinition", "ExecutionContext"], Awaitable[StepResult]]


@dataclass(frozen=True)
class StepDefinition:
    """Static description of one phase."""
    id: str
    name: str
    agent: str
    run: StepRunner
    model: Optional[str] = None
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    commit: bool = True
    push: bool = False


class StepResults:
    """Per-step outputs. Each step id can be recorded once."""

    def __init__(self):
        self._data: dict[str, Any] = {}

    def record(self, step_id: str, value: Any) -> None:
        if step_id in self._data:
            raise ValueError(f"Result for step '{step_id}' already recorded")
        self._data[step_id] = value

    def get(self, step_id: str, default: Any = None) -> Any:
        return self._data.get(step_id, default)

    def __contains__(self, step_id: str) -> bool:
        return step_id in self._data

    def __len__(self) -> int:
        return len(self._data)

    def as_dict(self) -> dict[str, Any]:
        return dict(self._data)


class CancellationHandle:
    """Single slot holding the agent client of the step that is running now.

    bind() fills the slot for the duration of a block and empties it on every
    exit path, so an external cancel() reaches whichever session is live.
    """

    def __init__(self):
        self._client: Optional["AcpClient"] = None

    @property
    def client(self) -> Optional["AcpClient"]:
        return self._client

    @property
    def is_active(self) -> bool:
        return self._client is not None

    @contextmanager
    def bind(self, client: "AcpClient") -> Iterator["AcpClient"]:
        if self._client is not None:
            raise RuntimeError("Another agent session is already active")
        self._client = client
        try:
            yield client
        finally:
            self._client = None

    async def cancel(self) -> bool:
        """Ask the live session to stop. Returns False when nothing is running."""
        client = self._client
        if client is None:
            return False
        await client.cancel()
        return True


@dataclass
class ExecutionContext:
    """Mutable state shared by all steps of one task execution."""
    task: Task
    cwd: Path
    config: AgentConfig
    options: TaskExecutionOptions
    file_manager: ArtifactStore
    git: GitOperations
    prompts: PromptBuilder
    progress: TaskProgressReporter
    extractor: Optional[QuestionExtractor] = None
    emit: Callable[[AgentEvent], None] = lambda event: None
    step_results: StepResults = field(default_factory=StepResults)
    cancellation: CancellationHandle = field(default_factory=CancellationHandle)
    client_factory: Optional[Callable[[], "AcpClient"]] = None

    @property
    def task_slug(self) -> str:
        return self.task.task_slug

    @property
    def is_cloud_mode(self) -> bool:
        return self.options.is_cloud_mode

    def emit_status(self, status: str, **data: Any) -> None:
        self.emit(StatusEvent(status=status, data=data))
