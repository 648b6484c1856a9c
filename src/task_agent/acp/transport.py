"""Child process transport for the coding agent.

Spawns the agent executable and exposes its stdin/stdout as a stream of
newline-delimited JSON messages.
"""

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.markup import escape

from .errors import TransportError, TransportClosedError


console = Console()

# Agent messages can carry whole files, so lift asyncio's 64 KiB line limit
STREAM_LIMIT = 16 * 1024 * 1024

# Seconds to wait for SIGTERM before escalating to SIGKILL
STOP_GRACE_SECONDS = 5.0


class ProcessTransport:
    """Owns the agent child process and frames its stdio as JSON lines."""

    def __init__(
        self,
        command: list[str],
        cwd: Path,
        env: Optional[dict[str, str]] = None,
        debug: bool = False,
    ):
        if not command:
            raise ValueError("Agent command must not be empty")
        self.command = list(command)
        self.cwd = Path(cwd)
        self.env = dict(env or {})
        self.debug = debug
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()
        self._stopped = False

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    async def start(self) -> None:
        """Launch the agent process.

        Raises:
            TransportError: If the executable cannot be spawned
        """
        if self._process is not None:
            raise TransportError("Transport already started")

        env = os.environ.copy()
        env.update(self.env)
        # Keep node-based agents from printing warnings onto the protocol stream
        env.setdefault("NODE_NO_WARNINGS", "1")

        if self.debug:
            console.print(f"[dim]Starting agent: {escape(' '.join(self.command))} (cwd={escape(str(self.cwd))})[/dim]")

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.cwd),
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LIMIT,
            )
        except (OSError, ValueError) as e:
            raise TransportError(f"Failed to start agent process {self.command[0]!r}: {e}") from e

        self._stopped = False
        self._stderr_task = asyncio.create_task(self._drain_stderr())

    async def _drain_stderr(self) -> None:
        process = self._process
        if process is None or process.stderr is None:
            return
        while True:
            line = await process.stderr.readline()
            if not line:
                return
            if self.debug:
                text = line.decode("utf-8", errors="replace").rstrip()
                console.print(f"[dim]agent stderr: {escape(text)}[/dim]")

    async def send(self, message: dict[str, Any]) -> None:
        """Write one JSON message followed by a newline."""
        process = self._process
        if process is None or process.stdin is None or process.stdin.is_closing():
            raise TransportClosedError("Agent stdin is not available", self.returncode)

        data = json.dumps(message, separators=(",", ":")).encode("utf-8") + b"\n"
        async with self._write_lock:
            try:
                process.stdin.write(data)
                await process.stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                raise TransportClosedError(f"Agent stdin closed: {e}", self.returncode) from e

    async def receive(self) -> Optional[str]:
        """Read the next non-empty line, or None once stdout reaches EOF."""
        process = self._process
        if process is None or process.stdout is None:
            return None
        while True:
            line = await process.stdout.readline()
            if not line:
                return None
            text = line.decode("utf-8", errors="replace").strip()
            if text:
                return text

    async def wait(self) -> Optional[int]:
        """Wait for the process to exit and return its exit code."""
        if self._process is None:
            return None
        return await self._process.wait()

    async def stop(self) -> None:
        """Terminate the agent process and drop all references.

        Safe to call after a partial start and safe to call twice.
        """
        if self._stopped:
            return
        self._stopped = True

        process = self._process
        self._process = None

        if process is not None:
            if process.stdin is not None and not process.stdin.is_closing():
                process.stdin.close()
            if process.returncode is None:
                try:
                    process.terminate()
                except ProcessLookupError:
                    pass
                try:
                    await asyncio.wait_for(process.wait(), timeout=STOP_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    try:
                        process.kill()
                    except ProcessLookupError:
                        pass
                    await process.wait()
            if self.debug:
                console.print(f"[dim]Agent process exited with code {process.returncode}[/dim]")

        if self._stderr_task is not None:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None
