"""Tests for installing the toolchain inside the bridge: step order,
fallbacks, failure short-circuits and progress narration."""

from __future__ import annotations

import asyncio
from collections.abc import Callable

import pytest
from conftest import Invocation, available_bridge, ok

from gdsflow.bridge import BridgeEnvironment
from gdsflow.process import ToolResult
from gdsflow.toolchain import installer as installer_module
from gdsflow.toolchain.installer import BRIDGE_INSTALL_COMMAND, ToolchainInstaller


def _script(invocation: Invocation) -> str:
    return invocation.args[-1]


def _shell(fail: Callable[[str], bool] = lambda script: False, outputs: dict[str, str] | None = None):
    """Bridge shell that succeeds unless ``fail`` matches the script."""

    def handler(invocation: Invocation) -> ToolResult:
        script = _script(invocation)
        if fail(script):
            return ok("error: step failed\n", exit_code=1)
        for needle, stdout in (outputs or {}).items():
            if needle in script:
                return ok(stdout)
        return ok()

    return handler


class _Narration:
    def __init__(self) -> None:
        self.messages: list[str] = []
        self.percents: list[int] = []

    def installer(self, bridge: BridgeEnvironment) -> ToolchainInstaller:
        return ToolchainInstaller(bridge, on_progress=self.messages.append, on_percent=self.percents.append)


# ---------------------------------------------------------------------------
# Bridge installation check
# ---------------------------------------------------------------------------


class TestBridgeInstallCheck:
    def test_already_installed(self) -> None:
        bridge, _ = available_bridge(_shell())
        check = ToolchainInstaller(bridge).check_bridge_installation()
        assert check.can_install is False
        assert check.message == "WSL is already installed"

    def test_non_windows_host(self, no_bridge: BridgeEnvironment, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(installer_module, "_IS_WINDOWS", False)
        check = ToolchainInstaller(no_bridge).check_bridge_installation()
        assert check.can_install is False
        assert check.command == ""

    def test_windows_build_too_old(self, no_bridge: BridgeEnvironment, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(installer_module, "_IS_WINDOWS", True)
        monkeypatch.setattr(installer_module, "_windows_build", lambda: 17763)
        check = ToolchainInstaller(no_bridge).check_bridge_installation()
        assert check.can_install is False
        assert "1903" in check.message

    def test_installable(self, no_bridge: BridgeEnvironment, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(installer_module, "_IS_WINDOWS", True)
        monkeypatch.setattr(installer_module, "_windows_build", lambda: 19045)
        check = ToolchainInstaller(no_bridge).check_bridge_installation()
        assert check.can_install is True
        assert check.command == BRIDGE_INSTALL_COMMAND


# ---------------------------------------------------------------------------
# Docker
# ---------------------------------------------------------------------------


class TestInstallDocker:
    def test_success(self) -> None:
        bridge, runner = available_bridge(_shell(outputs={"whoami": "dev user\n"}))
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).install_docker()) is True
        scripts = [_script(invocation) for invocation in runner.invocations]
        assert scripts == [
            "sudo -n apt-get update",
            "sudo -n apt-get install -y docker.io docker-compose",
            "sudo -n service docker start",
            "whoami",
            "sudo -n usermod -aG docker 'dev user'",
        ]
        assert narration.percents[-1] == 100
        assert "✓ Docker installed successfully!" in narration.messages

    def test_update_failure_only_warns(self) -> None:
        bridge, _ = available_bridge(_shell(fail=lambda script: script.endswith("apt-get update")))
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).install_docker()) is True
        assert "⚠ Package update had warnings, continuing..." in narration.messages

    def test_package_failure_stops(self) -> None:
        bridge, runner = available_bridge(_shell(fail=lambda script: "docker.io" in script))
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).install_docker()) is False
        assert not any("service docker" in _script(invocation) for invocation in runner.invocations)
        assert "Docker installation failed" in narration.messages

    def test_tool_output_is_streamed(self) -> None:
        bridge, _ = available_bridge(_shell(outputs={"apt-get update": "Hit:1 http://archive.ubuntu.com\n\n"}))
        narration = _Narration()
        asyncio.run(narration.installer(bridge).install_docker())
        assert "  Hit:1 http://archive.ubuntu.com" in narration.messages
        assert "  " not in narration.messages

    def test_no_bridge(self, no_bridge: BridgeEnvironment) -> None:
        narration = _Narration()
        assert asyncio.run(narration.installer(no_bridge).install_docker()) is False
        assert narration.messages == ["WSL not available"]


# ---------------------------------------------------------------------------
# Yosys
# ---------------------------------------------------------------------------


class TestInstallYosys:
    def test_falls_back_to_user_prefix(self) -> None:
        bridge, runner = available_bridge(
            _shell(fail=lambda script: script.endswith("sudo -n make install"), outputs={"-V": "Yosys 0.38\n"})
        )
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).install_yosys_from_source()) is True
        scripts = [_script(invocation) for invocation in runner.invocations]
        assert any("make install PREFIX=$HOME/.local" in script for script in scripts)
        assert "  Version: Yosys 0.38" in narration.messages

    def test_clone_failure_skips_build(self) -> None:
        bridge, runner = available_bridge(_shell(fail=lambda script: "git clone" in script))
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).install_yosys_from_source()) is False
        assert not any("make -j" in _script(invocation) for invocation in runner.invocations)

    def test_build_failure(self) -> None:
        bridge, _ = available_bridge(_shell(fail=lambda script: "make -j" in script))
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).install_yosys_from_source()) is False
        assert "Yosys build failed" in narration.messages

    def test_existing_checkout_is_reused(self) -> None:
        bridge, runner = available_bridge(_shell())
        asyncio.run(ToolchainInstaller(bridge).install_yosys_from_source())
        clone = next(_script(invocation) for invocation in runner.invocations if "git clone" in _script(invocation))
        assert clone.startswith("cd $HOME && (test -d yosys/.git ||")


# ---------------------------------------------------------------------------
# OpenROAD
# ---------------------------------------------------------------------------


class TestInstallOpenROAD:
    def test_image_already_present(self) -> None:
        bridge, runner = available_bridge(_shell(outputs={"docker images -q": "3f2a9c\n"}))
        assert asyncio.run(ToolchainInstaller(bridge).install_openroad()) is True
        assert [_script(invocation) for invocation in runner.invocations] == ["docker images -q openroad/openroad"]

    def test_pulls_missing_image(self) -> None:
        bridge, runner = available_bridge(_shell())
        assert asyncio.run(ToolchainInstaller(bridge).install_openroad()) is True
        assert _script(runner.invocations[-1]) == "docker pull openroad/openroad:latest"

    def test_pull_failure(self) -> None:
        bridge, _ = available_bridge(_shell(fail=lambda script: script.startswith("docker pull")))
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).install_openroad()) is False
        assert "⚠ Could not install OpenROAD automatically" in narration.messages

    def test_source_build_hides_target_lines(self) -> None:
        bridge, _ = available_bridge(
            _shell(outputs={"make -j": "[ 10%] Built target odb\n[ 11%] Building CXX object\n"})
        )
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).install_openroad_from_source()) is True
        assert "  [ 11%] Building CXX object" in narration.messages
        assert not any("Built target" in message for message in narration.messages)

    def test_source_build_extends_path_once(self) -> None:
        bridge, runner = available_bridge(_shell(outputs={"grep -q": "missing\n"}))
        asyncio.run(ToolchainInstaller(bridge).install_openroad_from_source())
        scripts = [_script(invocation) for invocation in runner.invocations]
        assert any(script.endswith(">> $HOME/.bashrc") for script in scripts)

        bridge, runner = available_bridge(_shell(outputs={"grep -q": "exists\n"}))
        asyncio.run(ToolchainInstaller(bridge).install_openroad_from_source())
        scripts = [_script(invocation) for invocation in runner.invocations]
        assert not any(script.endswith(">> $HOME/.bashrc") for script in scripts)

    def test_cmake_failure(self) -> None:
        bridge, runner = available_bridge(_shell(fail=lambda script: script.endswith("cmake ..")))
        assert asyncio.run(ToolchainInstaller(bridge).install_openroad_from_source()) is False
        assert not any("make -j" in _script(invocation) for invocation in runner.invocations)


# ---------------------------------------------------------------------------
# Complete setup
# ---------------------------------------------------------------------------


class TestCompleteSetup:
    def test_without_bridge(self, no_bridge: BridgeEnvironment) -> None:
        narration = _Narration()
        assert asyncio.run(narration.installer(no_bridge).complete_setup()) is False
        assert f"Please run '{BRIDGE_INSTALL_COMMAND}' in PowerShell as Administrator" in narration.messages

    def test_yosys_failure_stops_before_openroad(self) -> None:
        bridge, runner = available_bridge(_shell(fail=lambda script: "yosys.git" in script))
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).complete_setup()) is False
        assert not any("OpenROAD" in _script(invocation) for invocation in runner.invocations)
        assert "Yosys installation failed" in narration.messages

    def test_success(self) -> None:
        bridge, runner = available_bridge(_shell())
        narration = _Narration()
        assert asyncio.run(narration.installer(bridge).complete_setup()) is True
        scripts = [_script(invocation) for invocation in runner.invocations]
        yosys_clone = next(i for i, script in enumerate(scripts) if "yosys.git" in script)
        openroad_clone = next(i for i, script in enumerate(scripts) if "OpenROAD.git" in script)
        assert yosys_clone < openroad_clone
        assert narration.percents[0] == 0
        assert narration.percents[-1] == 100
        assert "✓ Setup completed successfully!" in narration.messages
