"""Agent Client Protocol client.

Speaks JSON-RPC 2.0 over newline-delimited JSON with a coding agent running as
a child process. The client drives sessions (initialize, session/new,
session/prompt, session/cancel) and also serves the agent's callbacks:
permission requests, text file access and terminals.

Architecture:
- One read loop task consumes the agent's stdout in order
- Responses resolve pending request futures
- Inbound requests are handled one at a time, in arrival order;
  terminal/wait_for_exit is parked as a continuation so the loop keeps reading
- Each prompt moves the turn through IDLE -> AWAITING_TURN -> COMPLETED/CANCELLED
"""

import asyncio
import itertools
import json
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError
from rich.console import Console
from rich.markup import escape

from .. import __version__
from ..models import DEFAULT_AGENT_COMMAND, PermissionMode
from .errors import (
    AcpError, ProtocolError, RemoteError, TerminalNotFoundError,
    TransportClosedError,
    INTERNAL_ERROR, INVALID_PARAMS, METHOD_NOT_FOUND, RESOURCE_NOT_FOUND,
)
from .notifications import AgentMessageChunk, SessionNotification, parse_session_notification
from .permissions import PermissionRequest, PermissionStrategy, auto_approve, decide
from .terminals import DEFAULT_OUTPUT_LIMIT, TerminalManager
from .transport import ProcessTransport


console = Console()

PROTOCOL_VERSION = 1

DEFAULT_PERMISSION_MODE = PermissionMode.BYPASS.value

NotificationSink = Callable[[SessionNotification], None]
Handler = Callable[[dict[str, Any]], Awaitable[Any]]


class TurnState(str, Enum):
    """Where the current session's prompt turn stands."""
    IDLE = "idle"
    AWAITING_TURN = "awaiting_turn"
    CANCELLING = "cancelling"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class InitializeResponse(BaseModel):
    protocol_version: int = Field(..., alias="protocolVersion")
    agent_capabilities: dict[str, Any] = Field(default_factory=dict, alias="agentCapabilities")
    auth_methods: list[Any] = Field(default_factory=list, alias="authMethods")


class PromptResult(BaseModel):
    """Outcome of one prompt turn."""
    stop_reason: str
    text: str = ""

    @property
    def cancelled(self) -> bool:
        return self.stop_reason == "cancelled"


class AcpClient:
    """Client side of an agent session over a child process's stdio."""

    def __init__(
        self,
        cwd: Path,
        command: Optional[list[str]] = None,
        env: Optional[dict[str, str]] = None,
        on_notification: Optional[NotificationSink] = None,
        permission_strategy: PermissionStrategy = auto_approve,
        terminal_output_limit: int = DEFAULT_OUTPUT_LIMIT,
        debug: bool = False,
        transport: Optional[ProcessTransport] = None,
    ):
        self.cwd = Path(cwd)
        self.command = list(command or DEFAULT_AGENT_COMMAND)
        self.env = dict(env or {})
        self.on_notification = on_notification
        self.permission_strategy = permission_strategy
        self.debug = debug

        self._transport = transport
        self._terminals = TerminalManager(self.cwd, terminal_output_limit, debug=debug)
        self._reader: Optional[asyncio.Task] = None
        self._continuations: set[asyncio.Task] = set()
        self._pending: dict[int, tuple[str, asyncio.Future]] = {}
        self._ids = itertools.count(1)
        self._closed = False

        self.agent_capabilities: dict[str, Any] = {}
        self.session_id: Optional[str] = None
        self._session_cwd: Optional[Path] = None
        self._state = TurnState.IDLE
        self._turn_request_id: Optional[int] = None
        self._turn_text: list[str] = []

        self._handlers: dict[str, Handler] = {
            "session/request_permission": self._handle_permission,
            "fs/read_text_file": self._handle_read_text_file,
            "fs/write_text_file": self._handle_write_text_file,
            "terminal/create": self._handle_terminal_create,
            "terminal/output": self._handle_terminal_output,
            "terminal/wait_for_exit": self._handle_terminal_wait_for_exit,
            "terminal/kill": self._handle_terminal_kill,
            "terminal/release": self._handle_terminal_release,
        }
        self._deferred_methods = {"terminal/wait_for_exit"}

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def terminals(self) -> TerminalManager:
        return self._terminals

    @property
    def is_connected(self) -> bool:
        return self._transport is not None and self._reader is not None and not self._closed

    async def __aenter__(self) -> "AcpClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.stop()

    # =========================================================================
    # Outbound: session control
    # =========================================================================

    async def start(self) -> None:
        """Spawn the agent and negotiate capabilities.

        Raises:
            TransportError: The agent executable could not be started
            TransportClosedError: The agent exited before answering
            ProtocolError: The handshake response was malformed
        """
        if self._reader is not None:
            raise AcpError("Client already started")

        if self._transport is None:
            self._transport = ProcessTransport(self.command, self.cwd, self.env, debug=self.debug)
        await self._transport.start()

        self._closed = False
        self._reader = asyncio.create_task(self._read_loop())

        result = await self._request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "clientCapabilities": {
                "fs": {"readTextFile": True, "writeTextFile": True},
                "terminal": True,
            },
            "clientInfo": {"name": "task-agent", "version": __version__},
        })
        try:
            response = InitializeResponse.model_validate(result)
        except ValidationError as e:
            raise ProtocolError(f"Malformed initialize response: {e}") from e

        self.agent_capabilities = response.agent_capabilities
        self._debug(f"Initialized (protocol v{response.protocol_version})")

    async def create_session(
        self,
        cwd: Optional[Path] = None,
        mcp_servers: Optional[dict[str, dict[str, Any]]] = None,
        system_prompt: Optional[str] = None,
        permission_mode: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        """Open a session scoped to a working directory and tool providers.

        Args:
            cwd: Session working directory (defaults to the client's)
            mcp_servers: Mapping of provider name to its connection config
            system_prompt: Optional system prompt for the agent
            permission_mode: Agent permission mode (defaults to bypassPermissions)
            model: Model identifier passed through to the agent

        Returns:
            The session id assigned by the agent
        """
        session_cwd = Path(cwd) if cwd else self.cwd
        servers = [{**config, "name": name} for name, config in (mcp_servers or {}).items()]

        meta: dict[str, Any] = {
            "permissionMode": str(getattr(permission_mode, "value", permission_mode) or DEFAULT_PERMISSION_MODE),
        }
        if model:
            meta["model"] = model
        if system_prompt:
            meta["systemPrompt"] = system_prompt

        result = await self._request("session/new", {
            "cwd": str(session_cwd),
            "mcpServers": servers,
            "_meta": meta,
        })
        session_id = result.get("sessionId") if isinstance(result, dict) else None
        if not isinstance(session_id, str) or not session_id:
            raise ProtocolError(f"session/new returned no sessionId: {result!r}")

        self.session_id = session_id
        self._session_cwd = session_cwd
        self._state = TurnState.IDLE
        self._debug(f"Session created: {session_id}")
        return session_id

    async def prompt(self, text: str) -> PromptResult:
        """Send one user turn and wait until the agent reports a stop reason.

        Notifications and agent callbacks keep being served while waiting.
        Text from agent message chunks is collected and returned.
        """
        if self.session_id is None:
            raise AcpError("No active session; call create_session() first")
        if self._state in (TurnState.AWAITING_TURN, TurnState.CANCELLING):
            raise AcpError("A prompt is already in flight for this session")

        self._state = TurnState.AWAITING_TURN
        self._turn_text = []
        self._debug(f"Prompting ({len(text)} chars)")

        try:
            request_id, future = await self._send_request("session/prompt", {
                "sessionId": self.session_id,
                "prompt": [{"type": "text", "text": text}],
            })
            self._turn_request_id = request_id
            result = await future
        except BaseException:
            self._state = TurnState.IDLE
            raise
        finally:
            self._turn_request_id = None

        stop_reason = result.get("stopReason") if isinstance(result, dict) else None
        if not isinstance(stop_reason, str):
            self._state = TurnState.IDLE
            raise ProtocolError(f"session/prompt returned no stopReason: {result!r}")

        self._state = TurnState.CANCELLED if stop_reason == "cancelled" else TurnState.COMPLETED
        self._debug(f"Turn finished: {stop_reason}")
        return PromptResult(stop_reason=stop_reason, text="".join(self._turn_text))

    async def cancel(self) -> None:
        """Ask the agent to stop the current turn. No-op without a session.

        The pending prompt() returns once the agent acknowledges.
        """
        if self.session_id is None or not self.is_connected:
            return
        if self._state == TurnState.AWAITING_TURN:
            self._state = TurnState.CANCELLING
        self._debug(f"Cancelling session {self.session_id}")
        try:
            await self._notify("session/cancel", {"sessionId": self.session_id})
        except TransportClosedError as e:
            self._debug(f"Cancel not delivered: {e}")

    async def stop(self) -> None:
        """Tear down terminals, the transport and session state. Always safe."""
        self._closed = True

        continuations = list(self._continuations)
        for task in continuations:
            task.cancel()
        if continuations:
            await asyncio.gather(*continuations, return_exceptions=True)
        self._continuations.clear()

        await self._terminals.close()

        if self._transport is not None:
            await self._transport.stop()
            self._transport = None

        if self._reader is not None:
            if not self._reader.done():
                self._reader.cancel()
            await asyncio.gather(self._reader, return_exceptions=True)
            self._reader = None

        self._fail_pending(TransportClosedError("Client stopped"))
        self.session_id = None
        self._session_cwd = None
        self._state = TurnState.IDLE
        self._turn_text = []

    # =========================================================================
    # Wire plumbing
    # =========================================================================

    async def _send_request(self, method: str, params: dict[str, Any]) -> tuple[int, asyncio.Future]:
        if self._transport is None or self._closed:
            raise TransportClosedError(f"Cannot send {method}: connection closed")
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (method, future)
        try:
            await self._transport.send({"jsonrpc": "2.0", "id": request_id, "method": method, "params": params})
        except BaseException:
            self._pending.pop(request_id, None)
            raise
        return request_id, future

    async def _request(self, method: str, params: dict[str, Any]) -> Any:
        _, future = await self._send_request(method, params)
        return await future

    async def _notify(self, method: str, params: dict[str, Any]) -> None:
        if self._transport is None or self._closed:
            raise TransportClosedError(f"Cannot send {method}: connection closed")
        await self._transport.send({"jsonrpc": "2.0", "method": method, "params": params})

    async def _send_result(self, request_id: Any, result: Any) -> None:
        await self._transport.send({"jsonrpc": "2.0", "id": request_id, "result": result})

    async def _send_error(self, request_id: Any, code: int, message: str) -> None:
        await self._transport.send({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        })

    def _fail_pending(self, error: Exception) -> None:
        pending = list(self._pending.values())
        self._pending.clear()
        for _, future in pending:
            if not future.done():
                future.set_exception(error)

    def _fail_turn(self, error: Exception) -> None:
        if self._turn_request_id is None:
            return
        entry = self._pending.pop(self._turn_request_id, None)
        if entry and not entry[1].done():
            entry[1].set_exception(error)

    async def _read_loop(self) -> None:
        transport = self._transport
        try:
            while True:
                line = await transport.receive()
                if line is None:
                    break
                try:
                    message = json.loads(line)
                except json.JSONDecodeError:
                    console.print(f"[yellow]Ignoring non-JSON line from agent: {escape(line[:200])}[/yellow]")
                    continue
                if not isinstance(message, dict):
                    console.print("[yellow]Ignoring non-object message from agent[/yellow]")
                    continue
                await self._dispatch(message)
        finally:
            self._closed = True
            returncode = transport.returncode
            if returncode is None and transport.is_running:
                try:
                    returncode = await asyncio.wait_for(transport.wait(), timeout=1.0)
                except asyncio.TimeoutError:
                    returncode = None
            self._fail_pending(TransportClosedError(
                f"Agent connection closed (exit code {returncode})", returncode
            ))

    async def _dispatch(self, message: dict[str, Any]) -> None:
        method = message.get("method")
        msg_id = message.get("id")

        if method is None:
            if msg_id is None:
                console.print("[yellow]Ignoring agent message with neither id nor method[/yellow]")
                return
            self._resolve_response(msg_id, message)
            return

        params = message.get("params") or {}
        if msg_id is None:
            self._handle_notification(method, params)
        else:
            await self._handle_request(msg_id, method, params)

    def _resolve_response(self, msg_id: Any, message: dict[str, Any]) -> None:
        entry = self._pending.pop(msg_id, None)
        if entry is None:
            self._debug(f"Response for unknown request id {msg_id!r}")
            return
        method, future = entry
        if future.done():
            return

        if "error" in message:
            error = message.get("error") or {}
            future.set_exception(RemoteError(
                method,
                int(error.get("code", INTERNAL_ERROR)),
                str(error.get("message", "unknown error")),
                error.get("data"),
            ))
        elif "result" in message:
            future.set_result(message["result"])
        else:
            future.set_exception(ProtocolError(f"Response to {method} has neither result nor error"))

    # =========================================================================
    # Inbound: notifications
    # =========================================================================

    def _handle_notification(self, method: str, params: dict[str, Any]) -> None:
        if method != "session/update":
            self._debug(f"Ignoring notification {method}")
            return

        try:
            notification = parse_session_notification(params)
        except (ValidationError, ValueError) as e:
            console.print(f"[yellow]Ignoring malformed session update: {escape(str(e))}[/yellow]")
            return

        update = notification.update
        if (
            isinstance(update, AgentMessageChunk)
            and self._state in (TurnState.AWAITING_TURN, TurnState.CANCELLING)
            and notification.session_id == self.session_id
        ):
            self._turn_text.append(update.text)

        if self.on_notification is not None:
            try:
                self.on_notification(notification)
            except Exception as e:
                console.print(f"[yellow]Notification handler failed: {escape(str(e))}[/yellow]")

    # =========================================================================
    # Inbound: requests (client capabilities)
    # =========================================================================

    async def _handle_request(self, msg_id: Any, method: str, params: dict[str, Any]) -> None:
        handler = self._handlers.get(method)
        if handler is None:
            await self._send_error(msg_id, METHOD_NOT_FOUND, f"Method not found: {method}")
            self._fail_turn(ProtocolError(f"Agent called unsupported capability {method!r}"))
            return

        if method in self._deferred_methods:
            task = asyncio.create_task(self._respond(msg_id, method, handler, params))
            self._continuations.add(task)
            task.add_done_callback(self._continuations.discard)
            return

        await self._respond(msg_id, method, handler, params)

    async def _respond(self, msg_id: Any, method: str, handler: Handler, params: dict[str, Any]) -> None:
        try:
            try:
                result = await handler(params)
            except (TerminalNotFoundError, FileNotFoundError) as e:
                await self._send_error(msg_id, RESOURCE_NOT_FOUND, str(e))
                return
            except (ValidationError, KeyError, TypeError, ValueError) as e:
                await self._send_error(msg_id, INVALID_PARAMS, f"Invalid params for {method}: {e}")
                return
            except (OSError, AcpError) as e:
                console.print(f"[red]{escape(method)} failed: {escape(str(e))}[/red]")
                await self._send_error(msg_id, INTERNAL_ERROR, str(e))
                return
            except Exception as e:
                console.print(f"[red]{escape(method)} handler raised {type(e).__name__}: {escape(str(e))}[/red]")
                await self._send_error(msg_id, INTERNAL_ERROR, f"{type(e).__name__}: {e}")
                return
            await self._send_result(msg_id, result if result is not None else {})
        except TransportClosedError as e:
            self._debug(f"Could not answer {method}: {e}")

    def _resolve_path(self, raw_path: str) -> Path:
        path = Path(raw_path)
        if not path.is_absolute():
            path = (self._session_cwd or self.cwd) / path
        return path

    async def _handle_permission(self, params: dict[str, Any]) -> dict[str, Any]:
        request = PermissionRequest.model_validate(params)
        decision = await decide(self.permission_strategy, request)
        self._debug(f"Permission for {request.tool_call_id}: {decision.option_id or 'cancelled'}")
        return decision.to_wire()

    async def _handle_read_text_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._resolve_path(params["path"])
        self._debug(f"Reading {path}")
        content = await asyncio.to_thread(path.read_text, encoding="utf-8")

        line = params.get("line")
        limit = params.get("limit")
        if line or limit:
            lines = content.splitlines(keepends=True)
            start = max(int(line) - 1, 0) if line else 0
            end = start + int(limit) if limit else None
            content = "".join(lines[start:end])
        return {"content": content}

    async def _handle_write_text_file(self, params: dict[str, Any]) -> dict[str, Any]:
        path = self._resolve_path(params["path"])
        content = params["content"]
        self._debug(f"Writing {path} ({len(content)} chars)")

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_write)
        return {}

    async def _handle_terminal_create(self, params: dict[str, Any]) -> dict[str, Any]:
        env_param = params.get("env") or []
        if isinstance(env_param, dict):
            env = {str(k): str(v) for k, v in env_param.items()}
        else:
            env = {str(item["name"]): str(item["value"]) for item in env_param}

        cwd = params.get("cwd")
        terminal_id = await self._terminals.create(
            command=params["command"],
            args=[str(a) for a in params.get("args") or []],
            cwd=str(self._resolve_path(cwd)) if cwd else str(self._session_cwd or self.cwd),
            env=env,
            output_byte_limit=params.get("outputByteLimit"),
        )
        return {"terminalId": terminal_id}

    async def _handle_terminal_output(self, params: dict[str, Any]) -> dict[str, Any]:
        return self._terminals.output(params["terminalId"]).to_wire()

    async def _handle_terminal_wait_for_exit(self, params: dict[str, Any]) -> dict[str, Any]:
        status = await self._terminals.wait_for_exit(params["terminalId"])
        return status.to_wire()

    async def _handle_terminal_kill(self, params: dict[str, Any]) -> dict[str, Any]:
        self._terminals.kill(params["terminalId"])
        return {}

    async def _handle_terminal_release(self, params: dict[str, Any]) -> dict[str, Any]:
        self._terminals.release(params["terminalId"])
        return {}

    def _debug(self, message: str) -> None:
        if self.debug:
            console.print(f"[dim]ACP: {escape(message)}[/dim]")
