"""Resolve configured tool paths into concrete invocations.

A configured path is launched one of three ways:

- ``docker:<image>`` runs the tool inside that image, with ``mount_root``
  mounted at ``/workspace``.
- ``wsl:<path>`` runs the path inside the bridge environment.
  ``wsl:docker:<image>`` runs the container with the bridge's docker.
- any other path runs directly on the host.

``use_bridge`` treats every path without a ``wsl:`` prefix as if it had one.
The decision is made per tool, so one flow can mix host and bridge tools.

An empty path is reported as NOT_CONFIGURED without spawning anything.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Literal

from ..bridge import BridgeEnvironment, host_to_bridge_path
from ..config import BRIDGE_PATH_PREFIX, DOCKER_PATH_PREFIX, ToolchainConfig
from ..process import CancellationToken, FailureKind, IProcessRunner, LineCallback, ProcessRunner, ToolResult
from ..scripts import PathMapper
from .catalog import get_tool_spec

LaunchMode = Literal["host", "bridge", "container"]

CONTAINER_WORKSPACE = "/workspace"


@dataclass(frozen=True)
class LaunchPlan:
    tool: str
    mode: LaunchMode
    executable: str
    image: str | None = None
    in_bridge: bool = False


class ToolLauncher:
    """Launch tools according to the toolchain configuration."""

    def __init__(
        self,
        config: ToolchainConfig,
        *,
        runner: IProcessRunner | None = None,
        bridge: BridgeEnvironment | None = None,
        docker_bin: str = "docker",
    ) -> None:
        self.config = config
        self.runner: IProcessRunner = runner or ProcessRunner()
        self.bridge = bridge
        self.docker_bin = docker_bin

    def resolve(self, tool: str) -> LaunchPlan | None:
        """Launch plan for ``tool``, or None when its path is empty."""
        path = self.config.path_for(tool).strip()
        if not path:
            return None
        in_bridge = self.config.use_bridge
        if path.startswith(BRIDGE_PATH_PREFIX):
            path = path[len(BRIDGE_PATH_PREFIX) :].strip()
            in_bridge = True
            if not path:
                return None
        if path.startswith(DOCKER_PATH_PREFIX):
            image = path[len(DOCKER_PATH_PREFIX) :].strip()
            if not image:
                return None
            return LaunchPlan(
                tool=tool,
                mode="container",
                executable=get_tool_spec(tool).command,
                image=image,
                in_bridge=in_bridge,
            )
        if in_bridge:
            return LaunchPlan(tool=tool, mode="bridge", executable=path, in_bridge=True)
        return LaunchPlan(tool=tool, mode="host", executable=path)

    def not_configured(self, tool: str) -> ToolResult:
        display = get_tool_spec(tool).display_name
        return ToolResult.failed(
            FailureKind.NOT_CONFIGURED,
            f"{display} path not configured. Run tool detection or set {tool}_path.",
        )

    def path_mapper(self, plan: LaunchPlan, mount_root: Path) -> PathMapper:
        """Map host paths into the convention seen by the tool."""
        if plan.mode == "container":
            root = mount_root

            def to_container(path: str) -> str:
                try:
                    relative = Path(path).relative_to(root)
                except ValueError:
                    return path
                return _container_path(relative)

            return to_container
        if plan.mode == "bridge":
            return host_to_bridge_path
        return str

    def build_command(self, plan: LaunchPlan, args: Sequence[str], *, workdir: Path, mount_root: Path) -> list[str]:
        """Argument vector for ``plan``.

        Container commands mount ``mount_root`` and start in ``workdir``,
        which must lie inside it.
        """
        if plan.mode != "container":
            return [plan.executable, *args]
        if not plan.image:
            raise ValueError("image is required for container mode")
        mount = str(mount_root.resolve())
        if plan.in_bridge:
            mount = host_to_bridge_path(mount)
        try:
            container_workdir = _container_path(workdir.resolve().relative_to(mount_root.resolve()))
        except ValueError as exc:
            raise ValueError(f"Working directory {workdir} is not within mount root {mount_root}") from exc
        return [
            self.docker_bin,
            "run",
            "--rm",
            "-v",
            f"{mount}:{CONTAINER_WORKSPACE}",
            "-w",
            container_workdir,
            plan.image,
            plan.executable,
            *args,
        ]

    async def launch(
        self,
        tool: str,
        args: Sequence[str],
        *,
        workdir: Path,
        mount_root: Path | None = None,
        token: CancellationToken | None = None,
        on_stdout: LineCallback | None = None,
        on_stderr: LineCallback | None = None,
        timeout: float | None = None,
    ) -> ToolResult:
        """Run ``tool`` with ``args`` in ``workdir``.

        Returns:
            ToolResult; NOT_CONFIGURED when the tool has no path and
            BRIDGE_UNAVAILABLE when bridge execution is requested without one.
        """
        plan = self.resolve(tool)
        if plan is None:
            return self.not_configured(tool)
        argv = self.build_command(plan, args, workdir=workdir, mount_root=mount_root or workdir)
        if plan.in_bridge:
            if self.bridge is None:
                return ToolResult.failed(FailureKind.BRIDGE_UNAVAILABLE, "Bridge environment is not available")
            return await self.bridge.run_argv(argv, workdir, on_stdout, on_stderr, token=token, timeout=timeout)
        return await self.runner.run(
            argv[0],
            argv[1:],
            cwd=workdir,
            token=token,
            on_stdout=on_stdout,
            on_stderr=on_stderr,
            timeout=timeout,
        )


def _container_path(relative: PurePath) -> str:
    suffix = relative.as_posix()
    if suffix in ("", "."):
        return CONTAINER_WORKSPACE
    return f"{CONTAINER_WORKSPACE}/{suffix}"


__all__ = [
    "CONTAINER_WORKSPACE",
    "LaunchMode",
    "LaunchPlan",
    "ToolLauncher",
]
