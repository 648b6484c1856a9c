"""Typed session notifications streamed from the agent.

The agent sends ``session/update`` notifications whose ``update`` object is
discriminated by its ``sessionUpdate`` field. Each kind gets its own model;
``parse_session_update`` is the only place that reads the discriminator.
"""

from datetime import datetime
from typing import Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class ContentBlock(BaseModel):
    """A content block (text, image, resource link...). Only text is interpreted."""
    model_config = ConfigDict(extra="allow")

    type: str
    text: Optional[str] = None


class _Update(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class UserMessageChunk(_Update):
    session_update: Literal["user_message_chunk"] = Field("user_message_chunk", alias="sessionUpdate")
    content: ContentBlock


class AgentMessageChunk(_Update):
    session_update: Literal["agent_message_chunk"] = Field("agent_message_chunk", alias="sessionUpdate")
    content: ContentBlock

    @property
    def text(self) -> str:
        if self.content.type == "text" and self.content.text:
            return self.content.text
        return ""


class AgentThoughtChunk(_Update):
    session_update: Literal["agent_thought_chunk"] = Field("agent_thought_chunk", alias="sessionUpdate")
    content: ContentBlock


class ToolCall(_Update):
    session_update: Literal["tool_call"] = Field("tool_call", alias="sessionUpdate")
    tool_call_id: str = Field(..., alias="toolCallId")
    title: str = ""
    tool_kind: Optional[str] = Field(default=None, alias="kind")
    status: Optional[str] = None
    raw_input: Optional[Any] = Field(default=None, alias="rawInput")


class ToolCallUpdate(_Update):
    session_update: Literal["tool_call_update"] = Field("tool_call_update", alias="sessionUpdate")
    tool_call_id: str = Field(..., alias="toolCallId")
    title: Optional[str] = None
    status: Optional[str] = None
    raw_output: Optional[Any] = Field(default=None, alias="rawOutput")


class PlanEntry(BaseModel):
    model_config = ConfigDict(extra="allow")

    content: str
    priority: Optional[str] = None
    status: Optional[str] = None


class PlanUpdate(_Update):
    session_update: Literal["plan"] = Field("plan", alias="sessionUpdate")
    entries: list[PlanEntry] = Field(default_factory=list)


class AvailableCommandsUpdate(_Update):
    session_update: Literal["available_commands_update"] = Field("available_commands_update", alias="sessionUpdate")
    available_commands: list[dict[str, Any]] = Field(default_factory=list, alias="availableCommands")


class CurrentModeUpdate(_Update):
    session_update: Literal["current_mode_update"] = Field("current_mode_update", alias="sessionUpdate")
    current_mode_id: str = Field(..., alias="currentModeId")


class UnknownUpdate(_Update):
    """Any update kind this client does not model. Kept so nothing is dropped."""
    session_update: str = Field(..., alias="sessionUpdate")
    payload: dict[str, Any] = Field(default_factory=dict)


SessionUpdate = Union[
    UserMessageChunk,
    AgentMessageChunk,
    AgentThoughtChunk,
    ToolCall,
    ToolCallUpdate,
    PlanUpdate,
    AvailableCommandsUpdate,
    CurrentModeUpdate,
    UnknownUpdate,
]

_UPDATE_MODELS: dict[str, type[_Update]] = {
    "user_message_chunk": UserMessageChunk,
    "agent_message_chunk": AgentMessageChunk,
    "agent_thought_chunk": AgentThoughtChunk,
    "tool_call": ToolCall,
    "tool_call_update": ToolCallUpdate,
    "plan": PlanUpdate,
    "available_commands_update": AvailableCommandsUpdate,
    "current_mode_update": CurrentModeUpdate,
}


class SessionNotification(BaseModel):
    """One ``session/update`` notification."""
    session_id: str
    update: SessionUpdate
    received_at: datetime = Field(default_factory=datetime.now)


def parse_session_update(raw: dict[str, Any]) -> SessionUpdate:
    """Turn a raw ``update`` object into its typed variant.

    Unknown kinds become ``UnknownUpdate``. A known kind with an invalid shape
    raises ``pydantic.ValidationError``.
    """
    kind = raw.get("sessionUpdate")
    if not isinstance(kind, str):
        raise ValueError("Session update is missing 'sessionUpdate'")
    model = _UPDATE_MODELS.get(kind)
    if model is None:
        return UnknownUpdate(sessionUpdate=kind, payload=raw)
    return model.model_validate(raw)


def parse_session_notification(params: dict[str, Any]) -> SessionNotification:
    """Parse the params of a ``session/update`` notification."""
    update = params.get("update")
    if not isinstance(update, dict):
        raise ValueError("Session notification is missing 'update'")
    return SessionNotification(
        session_id=str(params.get("sessionId", "")),
        update=parse_session_update(update),
    )


class StatusEvent(BaseModel):
    """Orchestrator-originated event (phase changes, commits, PRs...)."""
    type: Literal["status"] = "status"
    status: str
    data: dict[str, Any] = Field(default_factory=dict)
    ts: datetime = Field(default_factory=datetime.now)


AgentEvent = Union[SessionNotification, StatusEvent]
