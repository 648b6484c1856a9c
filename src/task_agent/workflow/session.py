"""Run one agent session for a step and collect the text it produced."""

from typing import Optional

from rich.console import Console

from ..acp.client import AcpClient
from ..acp.notifications import SessionNotification
from ..models import PermissionMode
from .types import ExecutionContext, StepDefinition, TaskCancelledError


console = Console()


def build_client(context: ExecutionContext) -> AcpClient:
    """Client for one step, wired to the context's event sink."""
    if context.client_factory is not None:
        return context.client_factory()

    config = context.config

    def forward(notification: SessionNotification) -> None:
        context.emit(notification)

    return AcpClient(
        cwd=context.cwd,
        command=config.agent_command,
        env=config.agent_env,
        on_notification=forward,
        terminal_output_limit=config.terminal_output_limit,
        debug=config.debug,
    )


async def run_agent_step(
    context: ExecutionContext,
    step: StepDefinition,
    prompt: str,
    system_prompt: Optional[str] = None,
    permission_mode: Optional[PermissionMode] = None,
) -> str:
    """Start a session, send the phase prompt and return the agent's text.

    The client is bound into the context's cancellation handle for the whole
    session and always stopped afterwards.

    Raises:
        TaskCancelledError: The turn ended with stop reason "cancelled"
    """
    client = build_client(context)
    mode = permission_mode or step.permission_mode

    with context.cancellation.bind(client):
        try:
            await client.start()
            await client.create_session(
                cwd=context.cwd,
                mcp_servers=context.config.mcp_servers,
                system_prompt=system_prompt,
                permission_mode=mode.value,
                model=step.model,
            )
            result = await client.prompt(prompt)
        finally:
            await client.stop()

    if result.cancelled:
        raise TaskCancelledError(f"{step.name} was cancelled")

    console.print(f"[dim]{step.name}: agent finished ({result.stop_reason})[/dim]")
    return result.text
