"""Errors raised by the agent protocol layer."""

from typing import Any, Optional


# JSON-RPC error codes used on the wire
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603
RESOURCE_NOT_FOUND = -32002


class AcpError(Exception):
    """Base class for agent protocol failures."""


class TransportError(AcpError):
    """The agent subprocess could not be started."""


class TransportClosedError(AcpError):
    """The agent's stdio stream closed while a reply was still expected."""

    def __init__(self, message: str, returncode: Optional[int] = None):
        super().__init__(message)
        self.returncode = returncode


class ProtocolError(AcpError):
    """The agent sent something the client cannot make sense of."""


class RemoteError(AcpError):
    """The agent answered a request with a JSON-RPC error object."""

    def __init__(self, method: str, code: int, message: str, data: Any = None):
        super().__init__(f"{method} failed ({code}): {message}")
        self.method = method
        self.code = code
        self.remote_message = message
        self.data = data


class TerminalNotFoundError(AcpError):
    """A terminal id was used that is unknown or already released."""

    def __init__(self, terminal_id: str):
        super().__init__(f"Terminal {terminal_id} not found")
        self.terminal_id = terminal_id
