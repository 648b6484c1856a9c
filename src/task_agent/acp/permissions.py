"""Approval strategies for the agent's permission requests.

The agent asks before running some tools. Most deployments have no human in
the loop, so ``auto_approve`` is the default; a different callable can be
handed to the client when approvals should be restricted or routed elsewhere.
"""

import inspect
from typing import Any, Awaitable, Callable, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


ALLOW_KINDS = ("allow_once", "allow_always")


class PermissionOption(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    option_id: str = Field(..., alias="optionId")
    name: str = ""
    kind: str


class PermissionRequest(BaseModel):
    """A ``session/request_permission`` call from the agent."""
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    session_id: str = Field(..., alias="sessionId")
    tool_call: dict[str, Any] = Field(default_factory=dict, alias="toolCall")
    options: list[PermissionOption] = Field(default_factory=list)

    @property
    def tool_call_id(self) -> Optional[str]:
        return self.tool_call.get("toolCallId")


class PermissionDecision(BaseModel):
    """Either a selected option id or a cancelled request."""
    option_id: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self.option_id is None

    def to_wire(self) -> dict[str, Any]:
        if self.option_id is None:
            return {"outcome": {"outcome": "cancelled"}}
        return {"outcome": {"outcome": "selected", "optionId": self.option_id}}


PermissionStrategy = Callable[
    [PermissionRequest],
    Union[PermissionDecision, Awaitable[PermissionDecision]],
]


def auto_approve(request: PermissionRequest) -> PermissionDecision:
    """Pick the first allow option; fall back to the first option offered."""
    for option in request.options:
        if option.kind in ALLOW_KINDS:
            return PermissionDecision(option_id=option.option_id)
    if request.options:
        return PermissionDecision(option_id=request.options[0].option_id)
    return PermissionDecision()


def reject_all(request: PermissionRequest) -> PermissionDecision:
    """Pick a reject option when one is offered, otherwise cancel."""
    for option in request.options:
        if option.kind.startswith("reject"):
            return PermissionDecision(option_id=option.option_id)
    return PermissionDecision()


async def decide(strategy: PermissionStrategy, request: PermissionRequest) -> PermissionDecision:
    """Run a strategy that may be sync or async."""
    decision = strategy(request)
    if inspect.isawaitable(decision):
        decision = await decision
    return decision
