"""External process execution with line streaming and process-tree cancellation.

This module provides the leaf of the execution stack:

- :class:`ToolResult` - immutable outcome of one tool invocation
- :class:`CancellationToken` - thread-safe cooperative cancellation flag
- :class:`ProcessRunner` - spawns one program, streams stdout/stderr line by
  line to callbacks, and kills the whole process tree on cancel or timeout

Spawn failures never raise; they come back as a failed ToolResult with no
exit code.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from asyncio.subprocess import Process

logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]

# Seconds between token polls while awaiting process exit
DEFAULT_POLL_INTERVAL_SEC: float = 0.1

# Grace period before escalating termination signals
DEFAULT_KILL_GRACE_SEC: float = 2.0

# Bytes requested per read from a child pipe
_READ_CHUNK_BYTES = 64 * 1024

_IS_WINDOWS = os.name == "nt"


class FailureKind(str, Enum):
    """Why a ToolResult is unsuccessful."""

    NOT_CONFIGURED = "not_configured"
    ARTIFACT_MISSING = "artifact_missing"
    SPAWN_FAILURE = "spawn_failure"
    NON_ZERO_EXIT = "non_zero_exit"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"
    BRIDGE_UNAVAILABLE = "bridge_unavailable"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class ToolResult:
    """Result of a single external tool invocation.

    Attributes:
        success: True if the process ran and exited with code 0.
        exit_code: Process exit code, or None if nothing was spawned.
        stdout: Captured standard output, one line per ``\\n``.
        stderr: Captured standard error, or the failure message when the
            process could not be started.
        failure: Failure classification, None on success.
        command: The argument vector that was executed, if any.
    """

    success: bool
    exit_code: int | None = None
    stdout: str = ""
    stderr: str = ""
    failure: FailureKind | None = None
    command: tuple[str, ...] = ()

    @property
    def cancelled(self) -> bool:
        return self.failure is FailureKind.CANCELLED

    @property
    def timed_out(self) -> bool:
        return self.failure is FailureKind.TIMEOUT

    @property
    def error_message(self) -> str:
        """Human-readable reason for failure (empty on success)."""
        if self.success:
            return ""
        message = self.stderr.strip()
        if message:
            return message
        if self.exit_code is not None:
            return f"process exited with code {self.exit_code}"
        return self.failure.value if self.failure else "unknown failure"

    @classmethod
    def failed(cls, kind: FailureKind, message: str) -> ToolResult:
        """Build a failure result for a process that was never spawned."""
        return cls(success=False, exit_code=None, stderr=message, failure=kind)


class OperationCancelledError(Exception):
    """Raised by :meth:`CancellationToken.raise_if_cancelled`."""


class CancellationToken:
    """Cooperative cancellation flag shared between a run and its controller.

    ``cancel()`` may be called from any thread; consumers poll
    ``is_cancelled`` at their await points.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelledError("operation was cancelled")


@runtime_checkable
class IProcessRunner(Protocol):
    """Protocol for process runners.

    The pipeline, bridge and detector only depend on this protocol so tests
    can substitute a recording double.
    """

    async def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        token: CancellationToken | None = None,
        on_stdout: LineCallback | None = None,
        on_stderr: LineCallback | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ToolResult: ...


class ProcessRunner:
    """Spawn external programs under asyncio and stream their output.

    Example:
        >>> runner = ProcessRunner()
        >>> result = asyncio.run(runner.run("yosys", ["-V"]))
        >>> result.success
        True
    """

    def __init__(
        self,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_SEC,
        kill_grace: float = DEFAULT_KILL_GRACE_SEC,
    ) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self.poll_interval = poll_interval
        self.kill_grace = kill_grace

    async def run(
        self,
        executable: str,
        args: Sequence[str] = (),
        *,
        cwd: Path | None = None,
        token: CancellationToken | None = None,
        on_stdout: LineCallback | None = None,
        on_stderr: LineCallback | None = None,
        timeout: float | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ToolResult:
        """Run ``executable`` with ``args`` and wait for it to finish.

        Args:
            executable: Program name (PATH lookup) or path.
            args: Argument vector, passed without shell interpretation.
            cwd: Working directory for the process.
            token: Polled while waiting; when set the process tree is killed
                and a CANCELLED result is returned.
            on_stdout: Called with each stdout line as soon as it is read.
            on_stderr: Called with each stderr line as soon as it is read.
            timeout: Seconds before the process tree is killed. None or
                non-positive disables the timeout.
            env: Full environment for the child, or None to inherit.

        Returns:
            ToolResult; spawn errors are reported in it rather than raised.
        """
        command = (executable, *args)
        if token is not None and token.is_cancelled:
            return ToolResult(success=False, failure=FailureKind.CANCELLED, command=command)

        logger.debug("spawn: %s (cwd=%s)", command, cwd)
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd) if cwd is not None else None,
                env=dict(env) if env is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                **_process_group_kwargs(),
            )
        except OSError as exc:
            logger.debug("spawn failed for %s: %s", executable, exc)
            return ToolResult(
                success=False,
                exit_code=None,
                stderr=f"Tool execution failed: {exc}",
                failure=FailureKind.SPAWN_FAILURE,
                command=command,
            )

        out_lines: list[str] = []
        err_lines: list[str] = []
        pumps = [
            asyncio.ensure_future(_pump(proc.stdout, out_lines, on_stdout)),
            asyncio.ensure_future(_pump(proc.stderr, err_lines, on_stderr)),
        ]
        failure: FailureKind | None = None
        try:
            failure = await self._wait(proc, token, timeout)
            if failure is not None:
                await self._terminate_tree(proc)
            await proc.wait()
            await asyncio.gather(*pumps)
        finally:
            if proc.returncode is None:
                await self._terminate_tree(proc)
            for pump in pumps:
                if not pump.done():
                    pump.cancel()

        exit_code = proc.returncode
        if failure is None and exit_code != 0:
            failure = FailureKind.NON_ZERO_EXIT
        return ToolResult(
            success=failure is None,
            exit_code=exit_code,
            stdout="".join(f"{line}\n" for line in out_lines),
            stderr="".join(f"{line}\n" for line in err_lines),
            failure=failure,
            command=command,
        )

    async def _wait(
        self,
        proc: Process,
        token: CancellationToken | None,
        timeout: float | None,
    ) -> FailureKind | None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None and timeout > 0 else None
        waiter = asyncio.ensure_future(proc.wait())
        try:
            while True:
                done, _ = await asyncio.wait({waiter}, timeout=self.poll_interval)
                if done:
                    return None
                if token is not None and token.is_cancelled:
                    logger.debug("cancel requested, killing pid %s", proc.pid)
                    return FailureKind.CANCELLED
                if deadline is not None and loop.time() >= deadline:
                    logger.debug("timeout after %ss, killing pid %s", timeout, proc.pid)
                    return FailureKind.TIMEOUT
        finally:
            if not waiter.done():
                waiter.cancel()

    async def _terminate_tree(self, proc: Process) -> None:
        """Stop proc and every process it spawned, escalating signals."""
        if proc.returncode is not None:
            return
        if _IS_WINDOWS:
            await _taskkill_tree(proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            return

        for sig in (signal.SIGINT, signal.SIGTERM):
            _signal_group(proc, sig)
            try:
                await asyncio.wait_for(proc.wait(), timeout=max(0.2, self.kill_grace / 2))
                return
            except asyncio.TimeoutError:
                continue
        _signal_group(proc, signal.SIGKILL)


async def _pump(
    stream: asyncio.StreamReader | None,
    lines: list[str],
    callback: LineCallback | None,
) -> None:
    # Chunked reads so a single line longer than the StreamReader limit
    # is still delivered whole.
    if stream is None:
        return
    pending = b""
    while True:
        chunk = await stream.read(_READ_CHUNK_BYTES)
        if not chunk:
            break
        pending += chunk
        *complete, pending = pending.split(b"\n")
        for raw in complete:
            _emit(raw, lines, callback)
    if pending:
        _emit(pending, lines, callback)


def _emit(raw: bytes, lines: list[str], callback: LineCallback | None) -> None:
    line = raw.decode("utf-8", errors="replace").rstrip("\r")
    lines.append(line)
    if callback is not None:
        callback(line)


def _process_group_kwargs() -> dict[str, object]:
    # A fresh session/process group lets cancellation reach grandchildren.
    if _IS_WINDOWS:
        import subprocess

        flags = getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
        flags |= getattr(subprocess, "CREATE_NO_WINDOW", 0)
        return {"creationflags": flags}
    return {"start_new_session": True}


def _signal_group(proc: Process, sig: signal.Signals) -> None:
    try:
        os.killpg(proc.pid, sig)
    except (ProcessLookupError, PermissionError):
        with contextlib.suppress(ProcessLookupError):
            proc.send_signal(sig)


async def _taskkill_tree(pid: int) -> None:
    try:
        killer = await asyncio.create_subprocess_exec(
            "taskkill",
            "/T",
            "/F",
            "/PID",
            str(pid),
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
    except OSError as exc:
        logger.warning("taskkill unavailable for pid %s: %s", pid, exc)
        return
    await killer.wait()


__all__ = [
    "DEFAULT_KILL_GRACE_SEC",
    "DEFAULT_POLL_INTERVAL_SEC",
    "CancellationToken",
    "FailureKind",
    "IProcessRunner",
    "LineCallback",
    "OperationCancelledError",
    "ProcessRunner",
    "ToolResult",
]
