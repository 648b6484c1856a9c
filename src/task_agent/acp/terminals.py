"""Terminals the agent asks the client to run on its behalf.

Each terminal is an independent shell process whose combined stdout/stderr is
buffered in the background. Output is only materialized when the agent polls
for it.
"""

import asyncio
import os
import shlex
import signal
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.markup import escape

from .errors import TerminalNotFoundError


console = Console()

DEFAULT_OUTPUT_LIMIT = 1024 * 1024
READ_CHUNK_SIZE = 4096


@dataclass
class ExitStatus:
    """How a terminal process ended."""
    exit_code: Optional[int] = None
    signal: Optional[str] = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        if returncode < 0:
            try:
                name = signal.Signals(-returncode).name
            except ValueError:
                name = str(-returncode)
            return cls(exit_code=None, signal=name)
        return cls(exit_code=returncode, signal=None)

    def to_wire(self) -> dict:
        return {"exitCode": self.exit_code, "signal": self.signal}


@dataclass
class TerminalOutput:
    """Snapshot returned by a non-blocking output poll."""
    output: str
    truncated: bool
    exit_status: Optional[ExitStatus]

    def to_wire(self) -> dict:
        return {
            "output": self.output,
            "truncated": self.truncated,
            "exitStatus": self.exit_status.to_wire() if self.exit_status else None,
        }


class OutputBuffer:
    """Byte buffer that keeps only the most recent ``limit`` bytes."""

    def __init__(self, limit: int = DEFAULT_OUTPUT_LIMIT):
        if limit < 0:
            raise ValueError("Output limit must not be negative")
        self.limit = limit
        self.truncated = False
        self._data = bytearray()

    def __len__(self) -> int:
        return len(self._data)

    def append(self, chunk: bytes) -> None:
        self._data.extend(chunk)
        overflow = len(self._data) - self.limit
        if overflow > 0:
            # Never cut a multi-byte UTF-8 sequence in half
            while overflow < len(self._data) and (self._data[overflow] & 0xC0) == 0x80:
                overflow += 1
            del self._data[:overflow]
            self.truncated = True

    def text(self) -> str:
        return self._data.decode("utf-8", errors="replace")


@dataclass
class TerminalState:
    """A running or finished terminal owned by the protocol client."""
    terminal_id: str
    command: str
    process: asyncio.subprocess.Process
    buffer: OutputBuffer
    exit_status: Optional[ExitStatus] = None
    waiters: list[asyncio.Future] = field(default_factory=list)
    watcher: Optional[asyncio.Task] = None

    @property
    def has_exited(self) -> bool:
        return self.exit_status is not None


class TerminalManager:
    """Creates and tracks terminals requested by the remote agent."""

    def __init__(
        self,
        default_cwd: Path,
        output_limit: int = DEFAULT_OUTPUT_LIMIT,
        debug: bool = False,
    ):
        self.default_cwd = Path(default_cwd)
        self.output_limit = output_limit
        self.debug = debug
        self._terminals: dict[str, TerminalState] = {}

    def __len__(self) -> int:
        return len(self._terminals)

    def __contains__(self, terminal_id: str) -> bool:
        return terminal_id in self._terminals

    def _get(self, terminal_id: str) -> TerminalState:
        terminal = self._terminals.get(terminal_id)
        if terminal is None:
            raise TerminalNotFoundError(terminal_id)
        return terminal

    async def create(
        self,
        command: str,
        args: Optional[list[str]] = None,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        output_byte_limit: Optional[int] = None,
    ) -> str:
        """Start a shell command and begin buffering its output.

        Args:
            command: Command (or full shell line when no args are given)
            args: Extra arguments, shell-quoted before being appended
            cwd: Working directory; relative paths resolve against the default
            env: Variables added on top of the inherited environment
            output_byte_limit: Per-terminal cap, never above the manager's cap

        Returns:
            The new terminal id
        """
        terminal_id = uuid.uuid4().hex
        shell_line = " ".join([command, *(shlex.quote(a) for a in args or [])])

        work_dir = self.default_cwd
        if cwd:
            work_dir = Path(cwd)
            if not work_dir.is_absolute():
                work_dir = self.default_cwd / work_dir

        proc_env = os.environ.copy()
        if env:
            proc_env.update(env)

        limit = self.output_limit
        if output_byte_limit is not None:
            if output_byte_limit < 0:
                raise ValueError(f"outputByteLimit must not be negative: {output_byte_limit}")
            # Zero keeps no output, only the truncation flag
            limit = min(limit, output_byte_limit)

        process = await asyncio.create_subprocess_shell(
            shell_line,
            cwd=str(work_dir),
            env=proc_env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            # Own process group so kill reaches the shell's children too
            start_new_session=True,
        )

        terminal = TerminalState(
            terminal_id=terminal_id,
            command=shell_line,
            process=process,
            buffer=OutputBuffer(limit),
        )
        terminal.watcher = asyncio.create_task(self._watch(terminal))
        self._terminals[terminal_id] = terminal

        if self.debug:
            console.print(f"[dim]Terminal {terminal_id[:8]} started: {escape(shell_line)}[/dim]")
        return terminal_id

    async def _watch(self, terminal: TerminalState) -> None:
        """Pump output into the buffer, then record the exit status."""
        stdout = terminal.process.stdout
        if stdout is not None:
            while True:
                chunk = await stdout.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                terminal.buffer.append(chunk)

        returncode = await terminal.process.wait()
        terminal.exit_status = ExitStatus.from_returncode(returncode)

        for waiter in terminal.waiters:
            if not waiter.done():
                waiter.set_result(terminal.exit_status)
        terminal.waiters.clear()

        if self.debug:
            console.print(
                f"[dim]Terminal {terminal.terminal_id[:8]} exited "
                f"(code={terminal.exit_status.exit_code}, signal={terminal.exit_status.signal})[/dim]"
            )

    def output(self, terminal_id: str) -> TerminalOutput:
        """Return buffered output and the exit status snapshot. Never blocks."""
        terminal = self._get(terminal_id)
        return TerminalOutput(
            output=terminal.buffer.text(),
            truncated=terminal.buffer.truncated,
            exit_status=terminal.exit_status,
        )

    async def wait_for_exit(self, terminal_id: str) -> ExitStatus:
        """Suspend until the terminal's process exits."""
        terminal = self._get(terminal_id)
        if terminal.exit_status is not None:
            return terminal.exit_status

        waiter = asyncio.get_running_loop().create_future()
        terminal.waiters.append(waiter)
        return await waiter

    def kill(self, terminal_id: str) -> None:
        """Send SIGTERM but keep the terminal around for output polling."""
        terminal = self._get(terminal_id)
        self._terminate(terminal)

    def release(self, terminal_id: str) -> None:
        """Kill the terminal if it is still running and forget it."""
        terminal = self._get(terminal_id)
        self._terminate(terminal)
        del self._terminals[terminal_id]

    async def close(self, timeout: float = 5.0) -> None:
        """Terminate every running terminal and drop all tracked state."""
        terminals = list(self._terminals.values())
        self._terminals.clear()

        for terminal in terminals:
            self._terminate(terminal)

        watchers = [t.watcher for t in terminals if t.watcher is not None and not t.watcher.done()]
        if not watchers:
            return
        _, pending = await asyncio.wait(watchers, timeout=timeout)
        for task in pending:
            task.cancel()

    def _terminate(self, terminal: TerminalState) -> None:
        if terminal.has_exited or terminal.process.returncode is not None:
            return
        if self.debug:
            console.print(f"[dim]Killing terminal {terminal.terminal_id[:8]}[/dim]")
        try:
            if hasattr(os, "killpg"):
                os.killpg(terminal.process.pid, signal.SIGTERM)
            else:
                terminal.process.terminate()
        except ProcessLookupError:
            pass
