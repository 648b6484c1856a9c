"""HTTP client for the task-tracking service.

Only the endpoints the orchestrator needs: read tasks, and create/update the
runs that record an execution attempt.
"""

from typing import Any, Optional

import httpx
from pydantic import ValidationError

from .models import Task, TaskRun, TaskRunStatus


class TaskAPIError(Exception):
    """The tracking service rejected a request or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TaskAPIClient:
    """Async client for `/api/projects/{project_id}/tasks/...`."""

    def __init__(
        self,
        base_url: str,
        api_key: str,
        project_id: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "TaskAPIClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    def _tasks_path(self, *parts: str) -> str:
        path = f"/api/projects/{self.project_id}/tasks/"
        for part in parts:
            path += f"{part}/"
        return path

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise TaskAPIError(f"{method} {path} failed: {e}") from e

        if response.is_error:
            try:
                detail = response.json()
            except ValueError:
                detail = response.reason_phrase
            raise TaskAPIError(
                f"Failed request: [{response.status_code}] {method} {path}: {detail}",
                status_code=response.status_code,
            )

        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    # =========================================================================
    # Tasks
    # =========================================================================

    async def fetch_task(self, task_id: str) -> Task:
        data = await self._request("GET", self._tasks_path(task_id))
        try:
            return Task.model_validate(data)
        except ValidationError as e:
            raise TaskAPIError(f"Unexpected task payload for {task_id}: {e}") from e

    async def list_tasks(self, filters: Optional[dict[str, str]] = None) -> list[Task]:
        params = {k: v for k, v in (filters or {}).items() if v}
        data = await self._request("GET", self._tasks_path(), params=params)
        results = data.get("results", []) if isinstance(data, dict) else data or []
        return [Task.model_validate(item) for item in results]

    # =========================================================================
    # Runs
    # =========================================================================

    async def create_task_run(self, task_id: str, status: TaskRunStatus = TaskRunStatus.STARTED) -> TaskRun:
        data = await self._request(
            "POST",
            self._tasks_path(task_id, "runs"),
            json={"status": status.value},
        )
        return TaskRun.model_validate(data)

    async def update_task_run(self, task_id: str, run_id: str, **fields: Any) -> TaskRun:
        """PATCH a run. Enum values are sent as their string value."""
        payload = {k: (v.value if isinstance(v, TaskRunStatus) else v) for k, v in fields.items()}
        data = await self._request(
            "PATCH",
            self._tasks_path(task_id, "runs", run_id),
            json=payload,
        )
        return TaskRun.model_validate(data)

    async def append_task_run_log(self, task_id: str, run_id: str, entries: list[dict[str, Any]]) -> TaskRun:
        data = await self._request(
            "POST",
            self._tasks_path(task_id, "runs", run_id, "append_log"),
            json={"entries": entries},
        )
        return TaskRun.model_validate(data)
