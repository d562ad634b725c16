"""Toolchain discovery across the host and the bridge environment.

For every tracked tool the detector tries, in order, stopping at the first hit:

1. the host PATH (``<command> <version flag>``; exit code 0 or 1 counts),
2. the bridge PATH (``command -v`` confirmed by one invocation),
3. a deep scan of tool-specific install directories, home build first,
4. a well-known container image (needs docker inside the bridge).

When the bridge is unavailable the deep scan runs on the host filesystem.
All-in-one flow images are probed separately. The operation mode is derived
from the per-tool flags; it is never stored.

Locations found inside the bridge are written back with a ``wsl:`` prefix, so
host and bridge tools can be mixed in one configuration.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ..bridge import BridgeEnvironment
from ..config import BRIDGE_PATH_PREFIX, DOCKER_PATH_PREFIX, ToolchainConfig
from ..process import IProcessRunner, ProcessRunner, ToolResult
from ..stages import Stage
from .catalog import FLOW_IMAGES, FLOW_LABEL, HOME_PLACEHOLDER, TRACKED_TOOLS, ToolSpec, expand_home
from .images import image_repository

logger = logging.getLogger(__name__)

# Seconds allowed for one version probe
PROBE_TIMEOUT_SEC: float = 30.0

# Version queries of several EDA tools exit with 1
_FOUND_EXIT_CODES = frozenset({0, 1})

ProgressCallback = Callable[[str], None]

_NOTHING_DETECTED = "No EDA toolchain detected. Install the EDA tools or a flow image."


class InstallType(str, Enum):
    PATH = "path"
    BRIDGE = "bridge"
    BUILD = "build"
    CONTAINER = "container"


class OperationMode(str, Enum):
    UNAVAILABLE = "unavailable"
    BASIC = "basic"
    STANDARD = "standard"

    @property
    def description(self) -> str:
        return _MODE_DESCRIPTIONS[self]


_MODE_DESCRIPTIONS = {
    OperationMode.STANDARD: "STANDARD MODE - Full toolchain available",
    OperationMode.BASIC: "BASIC MODE - OpenLane container only",
    OperationMode.UNAVAILABLE: "UNAVAILABLE - No tools detected",
}


@dataclass(frozen=True)
class ToolInfo:
    name: str
    display_name: str
    available: bool
    version: str = ""
    install_type: InstallType | None = None
    location: str = ""


def derive_operation_mode(tools: Mapping[str, ToolInfo], flow_images: Sequence[str]) -> OperationMode:
    """STANDARD with Yosys or OpenROAD, BASIC with only a flow image."""
    if any(tools[name].available for name in ("yosys", "openroad") if name in tools):
        return OperationMode.STANDARD
    if flow_images:
        return OperationMode.BASIC
    return OperationMode.UNAVAILABLE


@dataclass(frozen=True)
class ToolDetectionResult:
    """Outcome of one detection pass.

    Counts and the mode are computed from ``tools`` on access.
    """

    tools: dict[str, ToolInfo]
    missing_tools: list[str] = field(default_factory=list)
    flow_images: tuple[str, ...] = ()
    bridge_available: bool = False
    docker_available: bool = False

    @property
    def found_count(self) -> int:
        return sum(1 for info in self.tools.values() if info.available)

    @property
    def total_tools(self) -> int:
        return len(self.tools)

    @property
    def all_tools_found(self) -> bool:
        return self.found_count == self.total_tools

    @property
    def has_flow_image(self) -> bool:
        return bool(self.flow_images)

    @property
    def mode(self) -> OperationMode:
        return derive_operation_mode(self.tools, self.flow_images)

    def is_available(self, name: str) -> bool:
        info = self.tools.get(name)
        return info is not None and info.available

    def summary(self) -> str:
        if self.mode is OperationMode.UNAVAILABLE:
            return _NOTHING_DETECTED
        lines = [
            f"Mode: {self.mode.value.upper()}",
            f"Tools available: {self.found_count}/{self.total_tools}",
        ]
        if self.flow_images:
            lines.append(f"{FLOW_LABEL}: {', '.join(self.flow_images)}")
        for info in self.tools.values():
            if info.available:
                kind = info.install_type.value if info.install_type else ""
                lines.append(f"{info.display_name}: {info.version or 'detected'} ({kind})")
        if self.missing_tools:
            names = ", ".join(self.tools[name].display_name for name in self.missing_tools)
            lines.append(f"Missing: {names}")
        return "\n".join(lines)


class ToolchainDetector:
    """Probe for each tracked tool and write found locations into the config.

    Args:
        config: Toolchain configuration; empty path fields are filled in.
        bridge: Bridge environment used for probes 2 to 4.
        runner: Runner for host probes.
        tools: Tools to track, in narration order.
        flow_images: All-in-one flow image repositories to probe.
        host_home: Home directory for the host deep scan.
    """

    def __init__(
        self,
        config: ToolchainConfig,
        bridge: BridgeEnvironment,
        *,
        runner: IProcessRunner | None = None,
        tools: Sequence[ToolSpec] = TRACKED_TOOLS,
        flow_images: Sequence[str] = FLOW_IMAGES,
        host_home: Path | None = None,
        probe_timeout: float = PROBE_TIMEOUT_SEC,
    ) -> None:
        self.config = config
        self.bridge = bridge
        self.runner: IProcessRunner = runner or ProcessRunner()
        self.tools = tuple(tools)
        self.flow_images = tuple(flow_images)
        self.host_home = host_home
        self.probe_timeout = probe_timeout
        self.last_result: ToolDetectionResult | None = None
        self._on_progress: ProgressCallback | None = None

    async def detect(self, on_progress: ProgressCallback | None = None) -> ToolDetectionResult:
        """Run one full detection pass.

        Args:
            on_progress: Receives advisory narration lines.

        Returns:
            The detection result, also kept as :attr:`last_result`.
        """
        self._on_progress = on_progress
        try:
            result = await self._detect()
        finally:
            self._on_progress = None
        self.last_result = result
        return result

    async def _detect(self) -> ToolDetectionResult:
        if self.bridge.available:
            distro = self.bridge.distribution or "default distribution"
            self._narrate(f"✓ Bridge detected: {self.bridge.version} ({distro})")
        else:
            self._narrate("⚠ Bridge environment not available; scanning the host only")

        docker_available = await self._docker_available()
        self._narrate("✓ Docker is available" if docker_available else "⚠ Docker not found")

        flow_images: list[str] = []
        if docker_available:
            for image in self._flow_image_candidates():
                if await self._image_exists(image):
                    flow_images.append(image)
                    self._narrate(f"✓ Flow image found: {image}")
            if not flow_images:
                self._narrate(f"⚠ No {FLOW_LABEL} images found")

        self._narrate("Checking for EDA tools...")
        tools: dict[str, ToolInfo] = {}
        missing: list[str] = []
        for spec in self.tools:
            info = await self._detect_tool(spec, docker_available)
            tools[spec.name] = info
            if info.available:
                self._narrate(f"✓ {spec.display_name}: {info.version or 'detected'} [{info.install_type.value}]")
            else:
                missing.append(spec.name)
                self._narrate(f"✗ {spec.display_name}: not found")

        result = ToolDetectionResult(
            tools=tools,
            missing_tools=missing,
            flow_images=tuple(flow_images),
            bridge_available=self.bridge.available,
            docker_available=docker_available,
        )
        self._write_back(result)
        self._narrate(result.mode.description)
        if result.mode is OperationMode.STANDARD and missing:
            names = ", ".join(tools[name].display_name for name in missing)
            self._narrate(f"Missing optional tools: {names}")
        return result

    async def _detect_tool(self, spec: ToolSpec, docker_available: bool) -> ToolInfo:
        found = await self._probe_host_path(spec)
        if found is None and self.bridge.available:
            found = await self._probe_bridge_path(spec)
        if found is None:
            found = await self._deep_scan(spec)
        if found is None and docker_available and spec.container_image:
            found = await self._probe_container(spec.container_image)
        if found is None:
            return ToolInfo(name=spec.name, display_name=spec.display_name, available=False)
        install_type, location, version = found
        return ToolInfo(
            name=spec.name,
            display_name=spec.display_name,
            available=True,
            version=version,
            install_type=install_type,
            location=location,
        )

    async def _probe_host_path(self, spec: ToolSpec) -> tuple[InstallType, str, str] | None:
        result = await self.runner.run(
            spec.command,
            shlex.split(spec.version_flag),
            timeout=self.probe_timeout,
        )
        if result.exit_code not in _FOUND_EXIT_CODES:
            return None
        location = shutil.which(spec.command) or spec.command
        return InstallType.PATH, location, _version_line(result)

    async def _probe_bridge_path(self, spec: ToolSpec) -> tuple[InstallType, str, str] | None:
        if not await self.bridge.command_exists(spec.command):
            return None
        result = await self._bridge_invoke(spec.command, spec)
        if result.exit_code not in _FOUND_EXIT_CODES:
            logger.debug("%s listed in bridge PATH but failed to run", spec.command)
            return None
        return InstallType.BRIDGE, spec.command, _version_line(result)

    async def _deep_scan(self, spec: ToolSpec) -> tuple[InstallType, str, str] | None:
        if self.bridge.available:
            home = await self.bridge.home_directory()
        else:
            home = str(self.host_home or Path.home())
        home_build = expand_home(spec.home_build_dir, home)

        for directory in spec.search_dirs:
            if directory.startswith(HOME_PLACEHOLDER) and not home:
                continue
            expanded = expand_home(directory, home).rstrip("/")
            for candidate in (f"{expanded}/{spec.command}", f"{expanded}/bin/{spec.command}"):
                hit = await self._scan_candidate(candidate, spec)
                if hit is None:
                    continue
                if expanded == home_build.rstrip("/") or "/build/" in candidate:
                    install_type = InstallType.BUILD
                elif self.bridge.available:
                    install_type = InstallType.BRIDGE
                else:
                    install_type = InstallType.PATH
                self._narrate(f"  Found {spec.display_name} at {candidate}")
                return install_type, candidate, hit
        return None

    async def _scan_candidate(self, candidate: str, spec: ToolSpec) -> str | None:
        """Version line when ``candidate`` exists and runs, else None."""
        if self.bridge.available:
            if not await self.bridge.file_exists(candidate):
                return None
            result = await self._bridge_invoke(candidate, spec)
        else:
            if not _host_executable(candidate):
                return None
            result = await self.runner.run(
                candidate,
                shlex.split(spec.version_flag),
                timeout=self.probe_timeout,
            )
        if result.exit_code not in _FOUND_EXIT_CODES:
            return None
        return _version_line(result)

    async def _probe_container(self, image: str) -> tuple[InstallType, str, str] | None:
        if not await self._image_exists(image):
            return None
        return InstallType.CONTAINER, f"{DOCKER_PATH_PREFIX}{image}", "container image"

    async def _bridge_invoke(self, executable: str, spec: ToolSpec) -> ToolResult:
        command = shlex.join([executable, *shlex.split(spec.version_flag)])
        return await self.bridge.run(command, timeout=self.probe_timeout)

    async def _docker_available(self) -> bool:
        if self.bridge.available:
            return await self.bridge.command_exists("docker")
        result = await self.runner.run("docker", ["--version"], timeout=self.probe_timeout)
        return result.success

    async def _image_exists(self, image: str) -> bool:
        if self.bridge.available:
            return await self.bridge.image_exists(image)
        result = await self.runner.run("docker", ["images", "-q", image], timeout=self.probe_timeout)
        return result.success and bool(result.stdout.strip())

    def _flow_image_candidates(self) -> list[str]:
        candidates = list(self.flow_images)
        configured = self.config.docker_image.strip()
        if configured and image_repository(configured) not in {image_repository(c) for c in candidates}:
            candidates.append(configured)
        return candidates

    def _write_back(self, result: ToolDetectionResult) -> None:
        """Fill empty config paths with detected locations."""
        for info in result.tools.values():
            if not info.available or self.config.path_for(info.name):
                continue
            location = configured_location(info, bridge_available=result.bridge_available)
            self.config.set_path(info.name, location)
            logger.info("configured %s: %s", info.name, location)

    def _narrate(self, message: str) -> None:
        logger.info("%s", message)
        if self._on_progress is not None:
            self._on_progress(message)

    def summary(self, result: ToolDetectionResult | None = None) -> str:
        """Multi-line human-readable status of a detection pass."""
        result = result or self.last_result
        if result is None:
            return _NOTHING_DETECTED
        return result.summary()

    def tools_for_stage(self, stage: Stage, result: ToolDetectionResult | None = None) -> list[str]:
        """Display names of the detected tools able to run ``stage``."""
        result = result or self.last_result
        if result is None:
            return []
        names = [
            result.tools[spec.name].display_name
            for spec in self.tools
            if stage in spec.stages and result.is_available(spec.name)
        ]
        if result.has_flow_image:
            names.append(FLOW_LABEL)
        return names


def configured_location(info: ToolInfo, *, bridge_available: bool) -> str:
    """Config path for a detected tool.

    Everything except a host PATH hit was probed inside the bridge when the
    bridge was available, and is prefixed so it is launched there.
    """
    if bridge_available and info.install_type is not InstallType.PATH:
        return f"{BRIDGE_PATH_PREFIX}{info.location}"
    return info.location


def _version_line(result: ToolResult) -> str:
    for text in (result.stdout, result.stderr):
        for line in text.splitlines():
            if line.strip():
                return line.strip()
    return ""


def _host_executable(path: str) -> bool:
    candidate = Path(path)
    return candidate.is_file() and os.access(candidate, os.X_OK)


__all__ = [
    "PROBE_TIMEOUT_SEC",
    "InstallType",
    "OperationMode",
    "ToolDetectionResult",
    "ToolInfo",
    "ToolchainDetector",
    "configured_location",
    "derive_operation_mode",
]
