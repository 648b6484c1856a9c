"""Agent Client Protocol (ACP) client for driving a coding agent subprocess.

- ProcessTransport: the agent child process as a JSON-lines stream
- AcpClient: sessions, prompts, cancellation and the agent's callbacks
- TerminalManager: shell processes run on the agent's behalf
"""

from .client import AcpClient, PromptResult, TurnState, DEFAULT_AGENT_COMMAND
from .errors import (
    AcpError,
    ProtocolError,
    RemoteError,
    TerminalNotFoundError,
    TransportClosedError,
    TransportError,
)
from .notifications import (
    AgentEvent,
    AgentMessageChunk,
    SessionNotification,
    StatusEvent,
    ToolCall,
    ToolCallUpdate,
    parse_session_update,
)
from .permissions import PermissionDecision, PermissionRequest, auto_approve, reject_all
from .terminals import TerminalManager
from .transport import ProcessTransport

__all__ = [
    "AcpClient",
    "PromptResult",
    "TurnState",
    "DEFAULT_AGENT_COMMAND",
    "AcpError",
    "ProtocolError",
    "RemoteError",
    "TerminalNotFoundError",
    "TransportClosedError",
    "TransportError",
    "AgentEvent",
    "AgentMessageChunk",
    "SessionNotification",
    "StatusEvent",
    "ToolCall",
    "ToolCallUpdate",
    "parse_session_update",
    "PermissionDecision",
    "PermissionRequest",
    "auto_approve",
    "reject_all",
    "TerminalManager",
    "ProcessTransport",
]
