"""Child process supervision for stdio MCP servers.

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- A ChildProcess handle that exclusively owns the child's stdio pipes
- Idempotent termination: close stdin, then force kill the process group
- Stderr draining so a chatty child can never block on a full pipe

Key design points:
- POSIX: start_new_session=True so `npx` and the node process it starts
  share one process group that can be killed together
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- "Already exited" is never an error during termination
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import SpawnError

__all__ = [
    "ChildProcess",
    "ChildState",
    "ProcessSpec",
    "ProcessSupervisor",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_KILL_TIMEOUT = 2.0  # seconds to wait for exit after SIGKILL


class ChildState(Enum):
    """Lifecycle of a supervised child."""

    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a child to spawn.

    Attributes:
        argv: Command line arguments (first element is the executable)
        env: Environment overrides merged over the parent's environment
        cwd: Working directory (None = inherit)
        redact: Strings masked when argv is logged (e.g. credentials)
    """

    argv: list[str]
    env: Mapping[str, str] | None = None
    cwd: Path | None = None
    redact: tuple[str, ...] = ()

    def display_argv(self) -> str:
        """argv joined for logging, with redacted values masked."""
        shown = " ".join(self.argv)
        for secret in self.redact:
            if secret:
                shown = shown.replace(secret, "***")
        return shown


class ChildProcess:
    """Handle to a spawned child.

    Owns stdin/stdout/stderr exclusively; nothing outside the owning session
    writes to or reads from them.
    """

    def __init__(self, process: asyncio.subprocess.Process, spec: ProcessSpec) -> None:
        self._process = process
        self.spec = spec
        self.state = ChildState.STARTING
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    @property
    def is_running(self) -> bool:
        """True while the OS process has not been reaped."""
        return self._process.returncode is None

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self._process.stdout is not None
        return self._process.stdout

    def write(self, data: bytes) -> None:
        """Queue bytes for the child's stdin.

        Raises:
            ConnectionResetError: stdin is already closed
        """
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            raise ConnectionResetError("stdin of MCP server is closed")
        stdin.write(data)

    async def drain(self) -> None:
        """Wait until queued stdin bytes are flushed to the pipe."""
        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            await stdin.drain()

    def close_input(self) -> None:
        """Close stdin (best-effort): signals that no more requests follow."""
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.close()
        except (BrokenPipeError, ConnectionResetError, OSError) as e:
            logger.debug(f"Closing stdin failed pid={self.pid}: {e}")

    def kill(self) -> None:
        """Force kill the child process itself (not its group)."""
        self._process.kill()

    async def wait(self) -> int:
        return await self._process.wait()

    def start_stderr_drain(self, on_stderr: Callable[[bytes], None] | None = None) -> None:
        """Start draining stderr in the background."""
        if self._process.stderr is not None and self._stderr_task is None:
            self._stderr_task = asyncio.create_task(
                self._drain_stderr(on_stderr), name=f"msb-stderr-{self.pid}"
            )

    async def _drain_stderr(self, on_stderr: Callable[[bytes], None] | None) -> None:
        assert self._process.stderr is not None
        while True:
            chunk = await self._process.stderr.read(4096)
            if not chunk:
                break
            if on_stderr:
                on_stderr(chunk)
            else:
                logger.debug(
                    f"[stderr pid={self.pid}] "
                    f"{chunk.decode('utf-8', errors='replace').rstrip()}"
                )

    async def stop_stderr_drain(self) -> None:
        task, self._stderr_task = self._stderr_task, None
        if task and not task.done():
            task.cancel()
        if task:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def __repr__(self) -> str:
        return (
            f"ChildProcess(pid={self.pid}, state={self.state.value}, "
            f"returncode={self.returncode})"
        )


@dataclass
class ProcessSupervisor:
    """Spawns stdio MCP servers and terminates them reliably.

    Example:
        supervisor = ProcessSupervisor()
        child = await supervisor.spawn(ProcessSpec(argv=["npx", "-y", "@stripe/mcp"]))
        try:
            child.write(b'{"jsonrpc":"2.0","id":1,"method":"ping"}\\n')
            ...
        finally:
            await supervisor.kill(child)
    """

    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def spawn(self, spec: ProcessSpec) -> ChildProcess:
        """Launch the child with piped stdio in its own process group.

        Raises:
            SpawnError: The command cannot be resolved or executed
        """
        if not spec.argv:
            raise SpawnError("", "empty command")

        kwargs = self._build_subprocess_kwargs(spec)
        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **kwargs,
            )
        except OSError as e:
            # ENOENT, EACCES, ENOEXEC, E2BIG, ...
            raise SpawnError(spec.argv[0], e.strerror or str(e)) from e

        child = ChildProcess(process, spec)
        child.state = ChildState.RUNNING
        logger.debug(f"Started MCP server pid={child.pid} argv={spec.display_argv()}")
        return child

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}

        # Full parent environment plus overrides
        env = dict(os.environ)
        if spec.env:
            env.update(spec.env)
        kwargs["env"] = env

        if spec.cwd is not None:
            kwargs["cwd"] = spec.cwd

        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True

        return kwargs

    async def kill(self, child: ChildProcess) -> None:
        """Close stdin, then force kill the child. Idempotent.

        Termination strategy:
        1. Close stdin (graceful hint that no more requests are coming)
        2. Send SIGKILL to the process group (kill() on Windows)
        3. Wait up to kill_timeout for the exit to be reaped
        """
        if child.state in (ChildState.TERMINATING, ChildState.EXITED):
            return
        child.state = ChildState.TERMINATING
        pid = child.pid

        try:
            child.close_input()

            if child.is_running:
                logger.debug(f"Killing MCP server pid={pid}")
                if IS_WINDOWS:
                    self._windows_kill(child)
                else:
                    self._posix_kill(child)

            try:
                await asyncio.wait_for(child.wait(), timeout=self.kill_timeout)
                logger.debug(f"MCP server exited pid={pid} returncode={child.returncode}")
            except asyncio.TimeoutError:
                logger.warning(f"MCP server did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"MCP server already exited pid={pid}")
        except Exception as e:
            logger.warning(f"Error terminating MCP server pid={pid}: {e}")
        finally:
            await child.stop_stderr_drain()
            child.state = ChildState.EXITED

    def _posix_kill(self, child: ChildProcess) -> None:
        """Send SIGKILL to the child's process group on POSIX systems."""
        try:
            pgid = os.getpgid(child.pid)
            os.killpg(pgid, signal.SIGKILL)
            logger.debug(f"Sent SIGKILL to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to kill: {e}")
            child.kill()

    def _windows_kill(self, child: ChildProcess) -> None:
        """Force kill on Windows."""
        try:
            child.kill()
            logger.debug(f"Called kill() on pid={child.pid}")
        except ProcessLookupError:
            pass
