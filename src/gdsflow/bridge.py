"""Bridge environment (WSL) detection, command execution and path translation.

The bridge is a secondary POSIX environment that is only reachable through a
launcher binary on the host (``wsl``). Availability is probed once per
process; when the bridge is absent every operation returns an "unavailable"
answer immediately instead of trying to start the launcher.

Commands run inside the bridge are handed to ``bash -c`` as a single argument
vector element, so the host command line is never assembled by string
concatenation. Values interpolated into bridge shell commands are quoted with
:func:`shlex.quote`.
"""

from __future__ import annotations

import functools
import logging
import re
import shlex
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from .process import (
    CancellationToken,
    FailureKind,
    IProcessRunner,
    LineCallback,
    ProcessRunner,
    ToolResult,
)

logger = logging.getLogger(__name__)

DEFAULT_LAUNCHER = "wsl"

# Seconds allowed for each launcher status query at startup
DETECT_TIMEOUT_SEC: float = 15.0

_HOST_DRIVE_RE = re.compile(r"^([A-Za-z]):(.*)$")
_BRIDGE_MOUNT_RE = re.compile(r"^/mnt/([A-Za-z])(/.*)?$")


def host_to_bridge_path(host_path: str) -> str:
    """Convert a host path (``C:\\x``) to the bridge convention (``/mnt/c/x``).

    Paths without a drive letter only have their separators normalized.
    """
    if not host_path:
        return ""
    path = host_path.replace("\\", "/")
    match = _HOST_DRIVE_RE.match(path)
    if match is None:
        return path
    drive, rest = match.groups()
    return f"/mnt/{drive.lower()}{rest}"


def bridge_to_host_path(bridge_path: str) -> str:
    """Convert a bridge mount path (``/mnt/c/x``) back to ``C:\\x``.

    Paths outside ``/mnt/<drive>`` are returned unchanged.
    """
    if not bridge_path:
        return ""
    match = _BRIDGE_MOUNT_RE.match(bridge_path)
    if match is None:
        return bridge_path
    drive, rest = match.groups()
    return f"{drive.upper()}:" + (rest or "").replace("/", "\\")


def decode_launcher_output(raw: bytes) -> str:
    """Decode launcher output, which ``wsl.exe`` emits as UTF-16LE."""
    if not raw:
        return ""
    if raw.startswith(b"\xff\xfe") or (len(raw) > 1 and raw[1:2] == b"\x00"):
        text = raw.decode("utf-16-le", errors="replace")
    else:
        text = raw.decode("utf-8", errors="replace")
    return text.replace("\ufeff", "").replace("\x00", "")


def parse_bridge_version(status_output: str) -> str:
    """Extract ``WSL <n>`` from the ``Default Version: <n>`` status line."""
    for line in status_output.splitlines():
        if "Default Version:" in line:
            _, _, value = line.partition(":")
            if value.strip():
                return f"WSL {value.strip()}"
    return "WSL"


def parse_default_distribution(list_output: str) -> str:
    """Return the first listed distribution, which is the default one."""
    for line in list_output.splitlines():
        name = line.strip()
        if name:
            return name
    return ""


@dataclass(frozen=True)
class BridgeStatus:
    available: bool
    version: str = ""
    distribution: str = ""


class BridgeEnvironment:
    """Execute shell commands inside the bridge environment.

    Construct through :meth:`detect` (or the process-wide
    :func:`get_bridge_environment`); tests may pass a :class:`BridgeStatus`
    and a fake runner directly.
    """

    def __init__(
        self,
        status: BridgeStatus,
        *,
        runner: IProcessRunner | None = None,
        launcher: str = DEFAULT_LAUNCHER,
    ) -> None:
        self.status = status
        self.runner: IProcessRunner = runner or ProcessRunner()
        self.launcher = launcher
        self._home: str | None = None

    @classmethod
    def detect(
        cls,
        *,
        launcher: str = DEFAULT_LAUNCHER,
        runner: IProcessRunner | None = None,
    ) -> BridgeEnvironment:
        """Probe the launcher with ``--status`` and ``--list --quiet``."""
        status = _probe_launcher(launcher)
        if status.available:
            logger.info("bridge detected: %s (%s)", status.version, status.distribution or "default")
        else:
            logger.info("bridge environment not available")
        return cls(status, runner=runner, launcher=launcher)

    @property
    def available(self) -> bool:
        return self.status.available

    @property
    def version(self) -> str:
        return self.status.version

    @property
    def distribution(self) -> str:
        return self.status.distribution

    def build_command(self, command: str, working_dir: str | Path | None = None) -> list[str]:
        """Build the launcher argument vector for ``command``.

        Args:
            command: Shell command to run inside the bridge.
            working_dir: Host path; translated and ``cd``'d into first.

        Returns:
            Argument vector for the launcher. ``command`` travels as one
            element, never spliced into the host command line.
        """
        script = command
        if working_dir:
            bridge_dir = host_to_bridge_path(str(working_dir))
            script = f"cd {shlex.quote(bridge_dir)} && {command}"
        argv = [self.launcher]
        if self.distribution:
            argv.extend(["-d", self.distribution])
        argv.extend(["--exec", "bash", "-c", script])
        return argv

    async def run(
        self,
        command: str,
        working_dir: str | Path | None = None,
        on_output_line: LineCallback | None = None,
        on_error_line: LineCallback | None = None,
        *,
        token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        if not self.available:
            return ToolResult.failed(FailureKind.BRIDGE_UNAVAILABLE, "Bridge environment is not available")
        argv = self.build_command(command, working_dir)
        return await self.runner.run(
            argv[0],
            argv[1:],
            token=token,
            on_stdout=on_output_line,
            on_stderr=on_error_line,
            timeout=timeout,
        )

    async def run_argv(
        self,
        argv: Sequence[str],
        working_dir: str | Path | None = None,
        on_output_line: LineCallback | None = None,
        on_error_line: LineCallback | None = None,
        *,
        token: CancellationToken | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """Run an argument vector inside the bridge, quoting every element."""
        return await self.run(
            shlex.join(argv),
            working_dir,
            on_output_line,
            on_error_line,
            token=token,
            timeout=timeout,
        )

    async def command_exists(self, name: str) -> bool:
        if not self.available:
            return False
        result = await self.run(f"command -v {shlex.quote(name)}")
        return result.success and bool(result.stdout.strip())

    async def image_exists(self, name: str) -> bool:
        if not self.available:
            return False
        result = await self.run(f"docker images -q {shlex.quote(name)}")
        return result.success and bool(result.stdout.strip())

    async def tool_version(self, name: str, version_flag: str = "--version") -> str:
        """First line of ``<name> <version_flag>`` output, or "" on failure."""
        if not self.available:
            return ""
        result = await self.run(shlex.join([name, *shlex.split(version_flag)]))
        if not result.success:
            return ""
        return _first_line(result.stdout)

    async def home_directory(self) -> str:
        """``$HOME`` inside the bridge, queried once and cached."""
        if not self.available:
            return ""
        if self._home is None:
            result = await self.run("echo $HOME")
            self._home = result.stdout.strip() if result.success else ""
        return self._home

    async def file_exists(self, path: str) -> bool:
        if not self.available:
            return False
        result = await self.run(f"test -f {shlex.quote(path)} && echo found || echo missing")
        return result.stdout.strip() == "found"


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def _probe_launcher(launcher: str) -> BridgeStatus:
    status_proc = _run_launcher(launcher, ["--status"])
    if status_proc is None or status_proc.returncode != 0:
        return BridgeStatus(available=False)
    version = parse_bridge_version(decode_launcher_output(status_proc.stdout))

    distribution = ""
    list_proc = _run_launcher(launcher, ["--list", "--quiet"])
    if list_proc is not None and list_proc.returncode == 0:
        distribution = parse_default_distribution(decode_launcher_output(list_proc.stdout))
    return BridgeStatus(available=True, version=version, distribution=distribution)


def _run_launcher(launcher: str, args: list[str]) -> subprocess.CompletedProcess[bytes] | None:
    try:
        return subprocess.run(
            [launcher, *args],
            capture_output=True,
            stdin=subprocess.DEVNULL,
            check=False,
            timeout=DETECT_TIMEOUT_SEC,
        )
    except (OSError, subprocess.TimeoutExpired) as exc:
        logger.debug("bridge launcher probe %s %s failed: %s", launcher, args, exc)
        return None


@functools.lru_cache(maxsize=1)
def get_bridge_environment() -> BridgeEnvironment:
    """Process-wide bridge instance, detected on first use."""
    return BridgeEnvironment.detect()


__all__ = [
    "DEFAULT_LAUNCHER",
    "BridgeEnvironment",
    "BridgeStatus",
    "bridge_to_host_path",
    "decode_launcher_output",
    "get_bridge_environment",
    "host_to_bridge_path",
    "parse_bridge_version",
    "parse_default_distribution",
]
