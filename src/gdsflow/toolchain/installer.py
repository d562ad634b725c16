"""Install the open-source EDA tools inside the bridge environment.

:class:`ToolchainInstaller` drives package installs, source builds and image
pulls through :class:`~gdsflow.bridge.BridgeEnvironment`, streaming tool
output to a progress callback. Every step returns True on success and
reports failures through the callback; nothing raises for a failed command.

Privileged steps use ``sudo -n``: the bridge runs without a terminal, so
sudo must not need a password (or must have cached credentials).
"""

from __future__ import annotations

import logging
import os
import platform
import shlex
from collections.abc import Callable
from dataclasses import dataclass

from ..bridge import BridgeEnvironment
from ..process import CancellationToken, ToolResult
from .catalog import OPENROAD

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], None]
PercentCallback = Callable[[int], None]

YOSYS_REPOSITORY = "https://github.com/YosysHQ/yosys.git"
OPENROAD_REPOSITORY = "https://github.com/The-OpenROAD-Project/OpenROAD.git"

YOSYS_BUILD_PACKAGES: tuple[str, ...] = (
    "build-essential",
    "clang",
    "bison",
    "flex",
    "libreadline-dev",
    "gawk",
    "tcl-dev",
    "libffi-dev",
    "git",
    "graphviz",
    "xdot",
    "pkg-config",
    "python3",
    "libboost-system-dev",
    "libboost-python-dev",
    "libboost-filesystem-dev",
    "zlib1g-dev",
)

OPENROAD_BUILD_PACKAGES: tuple[str, ...] = (
    "build-essential",
    "cmake",
    "clang",
    "gcc-multilib",
    "libomp-dev",
    "python3",
    "python3-dev",
    "python3-pip",
    "swig",
    "libboost-all-dev",
    "libeigen3-dev",
    "qtbase5-dev",
    "qtchooser",
    "qt5-qmake",
    "qtbase5-dev-tools",
    "libqt5charts5-dev",
    "tcl-dev",
    "tk-dev",
    "flex",
    "bison",
    "libfl-dev",
    "liblemon-dev",
    "libcairo2-dev",
    "libglu1-mesa-dev",
    "libspdlog-dev",
)

BRIDGE_INSTALL_COMMAND = "wsl --install"

# Windows 10 version 1903, the first build with WSL 2
_MIN_WINDOWS_BUILD = 18362

_IS_WINDOWS = os.name == "nt"

_RULE = "=" * 39


@dataclass(frozen=True)
class BridgeInstallCheck:
    """Whether the bridge itself can be installed, and how."""

    can_install: bool
    message: str
    command: str = ""


def _windows_build() -> int | None:
    """Build number of the running Windows, e.g. 19045."""
    parts = platform.version().split(".")
    if len(parts) < 3 or not parts[2].isdigit():
        return None
    return int(parts[2])


class ToolchainInstaller:
    """Install Docker, Yosys and OpenROAD inside the bridge.

    Args:
        bridge: The bridge environment commands run in.
        on_progress: Receives narration and streamed tool output.
        on_percent: Receives the rough completion percentage of a step.
        token: Cancels the running command; later steps are skipped.
        step_timeout: Seconds allowed for one command; None waits.
    """

    def __init__(
        self,
        bridge: BridgeEnvironment,
        *,
        on_progress: ProgressCallback | None = None,
        on_percent: PercentCallback | None = None,
        token: CancellationToken | None = None,
        step_timeout: float | None = None,
    ) -> None:
        self.bridge = bridge
        self.on_progress = on_progress
        self.on_percent = on_percent
        self.token = token or CancellationToken()
        self.step_timeout = step_timeout

    def check_bridge_installation(self) -> BridgeInstallCheck:
        """Report whether ``wsl --install`` can set up the bridge here."""
        if self.bridge.available:
            return BridgeInstallCheck(False, "WSL is already installed")
        if not _IS_WINDOWS:
            return BridgeInstallCheck(False, "WSL is only available on Windows hosts")
        build = _windows_build()
        if build is None or build < _MIN_WINDOWS_BUILD:
            return BridgeInstallCheck(False, "WSL2 requires Windows 10 version 1903 or later")
        return BridgeInstallCheck(
            True,
            "WSL2 can be installed automatically. This will require a system restart.",
            BRIDGE_INSTALL_COMMAND,
        )

    async def install_docker(self) -> bool:
        if not self._require_bridge():
            return False
        self._report("Installing Docker in WSL...")
        self._percent(10)

        self._report("Updating package lists...")
        if not (await self._run("sudo -n apt-get update")).success:
            self._report("⚠ Package update had warnings, continuing...")
        self._percent(30)

        self._report("Installing Docker packages...")
        if not (await self._run("sudo -n apt-get install -y docker.io docker-compose")).success:
            self._report("Docker installation failed")
            return False
        self._percent(60)

        self._report("Starting Docker service...")
        if not (await self._run("sudo -n service docker start", stream=False)).success:
            self._report("⚠ Could not start Docker service automatically")
            self._report("  You may need to run: sudo service docker start")
        self._percent(80)

        self._report("Configuring Docker permissions...")
        user = (await self._run("whoami", stream=False)).stdout.strip()
        if user:
            await self._run(f"sudo -n usermod -aG docker {shlex.quote(user)}", stream=False)

        self._percent(100)
        self._report("✓ Docker installed successfully!")
        self._report("  Note: You may need to restart WSL for group changes to take effect")
        return True

    async def install_yosys_from_source(self) -> bool:
        if not self._require_bridge():
            return False
        self._report("Installing Yosys from source...")
        self._report("This may take 10-20 minutes depending on your system")
        self._percent(5)

        self._report("Installing build dependencies...")
        if not (await self._run(_apt_install(YOSYS_BUILD_PACKAGES))).success:
            self._report("⚠ Some dependencies failed to install, continuing...")
        self._percent(15)

        self._report("Cloning Yosys repository...")
        clone = f"cd $HOME && (test -d yosys/.git || git clone --recurse-submodules {YOSYS_REPOSITORY})"
        if not (await self._run(clone)).success:
            self._report("Failed to clone Yosys repository")
            return False
        self._percent(30)

        self._report("Building Yosys (this will take a while)...")
        if not (await self._run("cd $HOME/yosys && make -j$(nproc)")).success:
            self._report("Yosys build failed")
            self._report("  Check the log for details")
            return False
        self._percent(70)

        self._report("Installing Yosys to system...")
        if not (await self._run("cd $HOME/yosys && sudo -n make install", stream=False)).success:
            self._report("⚠ System installation failed, installing to ~/.local/bin")
            local = await self._run("mkdir -p $HOME/.local/bin && cd $HOME/yosys && make install PREFIX=$HOME/.local")
            if not local.success:
                self._report("Yosys installation failed")
                return False

        self._percent(100)
        self._report("✓ Yosys installed successfully!")
        await self._report_version("yosys -V || $HOME/.local/bin/yosys -V")
        return True

    async def install_openroad(self) -> bool:
        """Make the OpenROAD container image available to the bridge's docker."""
        if not self._require_bridge():
            return False
        image = OPENROAD.container_image or "openroad/openroad"
        self._report("Installing OpenROAD...")
        self._percent(10)

        self._report("Checking for OpenROAD Docker image...")
        if await self.bridge.image_exists(image):
            self._report("✓ OpenROAD Docker image already available")
            self._percent(100)
            return True

        self._report("Pulling OpenROAD Docker image...")
        self._report("This may take a few minutes...")
        self._percent(40)
        if (await self._run(f"docker pull {shlex.quote(image)}:latest", prefix="")).success:
            self._percent(100)
            self._report("✓ OpenROAD Docker image installed!")
            return True

        self._report("⚠ Could not install OpenROAD automatically")
        self._report(f"  You can compile from source: {OPENROAD_REPOSITORY.removesuffix('.git')}")
        return False

    async def install_openroad_from_source(self) -> bool:
        if not self._require_bridge():
            return False
        self._report("Installing OpenROAD from source...")
        self._report("This may take 20-30 minutes depending on your system")
        self._percent(5)

        self._report("Installing build dependencies and Python...")
        if not (await self._run(_apt_install(OPENROAD_BUILD_PACKAGES))).success:
            self._report("⚠ Some dependencies failed to install, continuing...")
        self._percent(15)

        self._report("Cloning OpenROAD repository...")
        clone = f"cd $HOME && (test -d OpenROAD/.git || git clone --recursive {OPENROAD_REPOSITORY})"
        if not (await self._run(clone)).success:
            self._report("Failed to clone OpenROAD repository")
            return False
        self._percent(30)

        self._report("Configuring build with CMake...")
        if not (await self._run("mkdir -p $HOME/OpenROAD/build && cd $HOME/OpenROAD/build && cmake ..")).success:
            self._report("CMake configuration failed")
            return False
        self._percent(45)

        self._report("Building OpenROAD (this will take a while)...")
        build = await self._run("cd $HOME/OpenROAD/build && make -j$(nproc)", skip=lambda line: "Built target" in line)
        if not build.success:
            self._report("OpenROAD build failed")
            self._report("  Check the log for details")
            return False
        self._percent(85)

        self._report("Setting up OpenROAD executable...")
        await self._run(
            "mkdir -p $HOME/.local/bin && ln -sf $HOME/OpenROAD/build/src/openroad $HOME/.local/bin/openroad",
            stream=False,
        )
        path_check = await self._run("grep -q '.local/bin' $HOME/.bashrc && echo exists || echo missing", stream=False)
        if "missing" in path_check.stdout:
            self._report("Adding ~/.local/bin to PATH...")
            await self._run("echo 'export PATH=\"$HOME/.local/bin:$PATH\"' >> $HOME/.bashrc", stream=False)

        self._percent(100)
        self._report("✓ OpenROAD installed successfully!")
        self._report("  Location: $HOME/OpenROAD/build/src/openroad")
        await self._report_version("$HOME/OpenROAD/build/src/openroad -version")
        return True

    async def complete_setup(self) -> bool:
        """Build Yosys and OpenROAD from source, stopping at the first failure."""
        self._report("Starting complete EDA toolchain setup...")
        self._report(_RULE)
        self._percent(0)

        if not self.bridge.available:
            self._report("WSL is not installed")
            self._report(f"Please run '{BRIDGE_INSTALL_COMMAND}' in PowerShell as Administrator")
            self._report("Then restart your computer and run this setup again")
            return False
        self._report("✓ WSL detected")
        self._percent(10)

        self._report("")
        self._report("Step 1/2: Installing Yosys synthesis tool...")
        if not await self.install_yosys_from_source():
            self._report("Yosys installation failed")
            return False
        self._percent(50)

        self._report("")
        self._report("Step 2/2: Installing OpenROAD place & route tool...")
        if not await self.install_openroad_from_source():
            self._report("OpenROAD installation failed")
            return False
        self._percent(100)

        self._report("")
        self._report(_RULE)
        self._report("✓ Setup completed successfully!")
        self._report("Run tool detection to configure the installed tools.")
        return True

    def _require_bridge(self) -> bool:
        if self.bridge.available:
            return True
        self._report("WSL not available")
        return False

    async def _run(
        self,
        command: str,
        *,
        stream: bool = True,
        prefix: str = "  ",
        skip: Callable[[str], bool] | None = None,
    ) -> ToolResult:
        def forward(line: str) -> None:
            if not line.strip() or (skip is not None and skip(line)):
                return
            self._report(f"{prefix}{line}")

        callback = forward if stream else None
        logger.debug("bridge install step: %s", command)
        result = await self.bridge.run(
            command,
            on_output_line=callback,
            on_error_line=callback,
            token=self.token,
            timeout=self.step_timeout,
        )
        if result.cancelled:
            self._report("Installation cancelled")
        return result

    async def _report_version(self, command: str) -> None:
        result = await self._run(command, stream=False)
        version = result.stdout.strip().splitlines()
        if result.success and version:
            self._report(f"  Version: {version[0]}")

    def _report(self, message: str) -> None:
        logger.info("%s", message)
        if self.on_progress is not None:
            self.on_progress(message)

    def _percent(self, value: int) -> None:
        if self.on_percent is not None:
            self.on_percent(value)


def _apt_install(packages: tuple[str, ...]) -> str:
    return shlex.join(["sudo", "-n", "apt-get", "install", "-y", *packages])


__all__ = [
    "BRIDGE_INSTALL_COMMAND",
    "OPENROAD_BUILD_PACKAGES",
    "YOSYS_BUILD_PACKAGES",
    "BridgeInstallCheck",
    "ToolchainInstaller",
]
