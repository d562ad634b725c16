"""Pytest configuration and shared fixtures for the test suite.

This module provides:
- A recording process-runner double with scripted results
- An event recorder subscribed to all three pipeline channels
- Project and toolchain fixtures rooted in ``tmp_path``
"""
from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from gdsflow.bridge import BridgeEnvironment, BridgeStatus
from gdsflow.config import ProjectConfig, Toolchain
from gdsflow.events import EventHub, LogEvent, ProgressEvent, Severity, StageCompletedEvent
from gdsflow.process import CancellationToken, FailureKind, LineCallback, ToolResult
from gdsflow.stages import STAGE_TABLE, Stage

# ---------------------------------------------------------------------------
# Environment Setup
# ---------------------------------------------------------------------------


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest environment for determinism."""
    deterministic_env = {
        "LC_ALL": "C",
        "LANG": "C",
        "TZ": "UTC",
        "PYTHONHASHSEED": "0",
    }
    for key, value in deterministic_env.items():
        os.environ.setdefault(key, value)


# ---------------------------------------------------------------------------
# Process runner double
# ---------------------------------------------------------------------------


@dataclass
class Invocation:
    executable: str
    args: tuple[str, ...]
    cwd: Path | None


Handler = Callable[[Invocation], ToolResult]


def spawn_failure(invocation: Invocation) -> ToolResult:
    return ToolResult(
        success=False,
        stderr=f"Tool execution failed: [Errno 2] No such file or directory: '{invocation.executable}'",
        failure=FailureKind.SPAWN_FAILURE,
        command=(invocation.executable, *invocation.args),
    )


def ok(stdout: str = "", exit_code: int = 0) -> ToolResult:
    return ToolResult(
        success=exit_code == 0,
        exit_code=exit_code,
        stdout=stdout,
        failure=None if exit_code == 0 else FailureKind.NON_ZERO_EXIT,
    )


@dataclass
class RecordingRunner:
    """Runner double that records invocations and returns scripted results.

    Each stdout line of the scripted result is also streamed to
    ``on_stdout``. With ``block_until_cancelled`` the call waits for the
    token and returns a CANCELLED result.
    """

    handler: Handler = field(default=lambda invocation: ok())
    block_until_cancelled: bool = False
    invocations: list[Invocation] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.started = asyncio.Event()

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
        invocation = Invocation(executable=executable, args=tuple(args), cwd=cwd)
        self.invocations.append(invocation)
        self.started.set()
        if self.block_until_cancelled:
            while token is None or not token.is_cancelled:
                await asyncio.sleep(0.01)
            return ToolResult(success=False, failure=FailureKind.CANCELLED)
        result = self.handler(invocation)
        if on_stdout is not None:
            for line in result.stdout.splitlines():
                on_stdout(line)
        return result

    @property
    def executables(self) -> list[str]:
        return [invocation.executable for invocation in self.invocations]


def flow_tools(invocation: Invocation) -> ToolResult:
    """Pretend to be every flow tool: write the stage outputs into cwd."""
    if invocation.args and invocation.args[0] == "-batch":
        return ok("Final result: Circuits match uniquely.\nNetlists match uniquely.\n")
    script = invocation.args[-1] if invocation.args else ""
    for definition in STAGE_TABLE.values():
        if definition.script_name == script and invocation.cwd is not None:
            for output in definition.outputs:
                (invocation.cwd / output).write_text(f"{definition.stage.value}\n", encoding="utf-8")
            if definition.stage is Stage.VERIFICATION:
                return ok("Total DRC errors found: 0\n")
    return ok("Number of cells:                 42\n")


# ---------------------------------------------------------------------------
# Detection scenarios
# ---------------------------------------------------------------------------

OPENROAD_BUILD = "/home/dev/OpenROAD/build/bin/openroad"


def host_only_yosys(invocation: Invocation) -> ToolResult:
    if invocation.executable == "yosys":
        return ok("Yosys 0.38 (git sha1 543faed)\n")
    return spawn_failure(invocation)


def nothing_on_host(invocation: Invocation) -> ToolResult:
    return spawn_failure(invocation)


def bridge_with_openroad_build(invocation: Invocation) -> ToolResult:
    """Bridge shell where OpenROAD exists only as a home-directory build."""
    script = invocation.args[-1]
    if script == "echo $HOME":
        return ok("/home/dev\n")
    if script.startswith("command -v "):
        return ok("")
    if script.startswith("test -f "):
        return ok("found\n" if script.startswith(f"test -f {OPENROAD_BUILD} ") else "missing\n")
    if script == f"{OPENROAD_BUILD} -version":
        return ok("OpenROAD v2.0-11297\n")
    return ok("", exit_code=127)


def available_bridge(handler: Handler) -> tuple[BridgeEnvironment, RecordingRunner]:
    runner = RecordingRunner(handler=handler)
    status = BridgeStatus(available=True, version="WSL 2", distribution="Ubuntu")
    return BridgeEnvironment(status, runner=runner), runner


@pytest.fixture
def recording_runner() -> RecordingRunner:
    return RecordingRunner(handler=flow_tools)


@pytest.fixture
def no_bridge() -> BridgeEnvironment:
    return BridgeEnvironment(BridgeStatus(available=False), runner=RecordingRunner())


# ---------------------------------------------------------------------------
# Event recorder
# ---------------------------------------------------------------------------


@dataclass
class EventRecorder:
    events: list[tuple[str, Any]] = field(default_factory=list)

    def attach(self, hub: EventHub) -> EventRecorder:
        hub.subscribe_log(lambda event: self.events.append(("log", event)))
        hub.subscribe_progress(lambda event: self.events.append(("progress", event)))
        hub.subscribe_stage_completed(lambda event: self.events.append(("completed", event)))
        return self

    @property
    def logs(self) -> list[LogEvent]:
        return [event for kind, event in self.events if kind == "log"]

    @property
    def progress(self) -> list[ProgressEvent]:
        return [event for kind, event in self.events if kind == "progress"]

    @property
    def completed(self) -> list[StageCompletedEvent]:
        return [event for kind, event in self.events if kind == "completed"]

    def logs_with(self, severity: Severity) -> list[LogEvent]:
        return [event for event in self.logs if event.severity is severity]


@pytest.fixture
def event_hub() -> EventHub:
    return EventHub()


@pytest.fixture
def recorder(event_hub: EventHub) -> EventRecorder:
    return EventRecorder().attach(event_hub)


# ---------------------------------------------------------------------------
# Projects and toolchain
# ---------------------------------------------------------------------------

COUNTER_RTL = """module counter(input clk, input rst, output reg [3:0] q);
  always @(posedge clk) q <= rst ? 4'd0 : q + 4'd1;
endmodule
"""


@pytest.fixture
def project(tmp_path: Path) -> ProjectConfig:
    root = tmp_path / "counter"
    root.mkdir()
    rtl = root / "counter.v"
    rtl.write_text(COUNTER_RTL, encoding="utf-8")
    return ProjectConfig(name="counter", root=root, rtl_files=[str(rtl)], top_module="counter")


@pytest.fixture
def toolchain(tmp_path: Path) -> Toolchain:
    chain = Toolchain(tmp_path / "config" / "toolchain.json")
    chain.config.yosys_path = "yosys"
    chain.config.openroad_path = "openroad"
    chain.config.magic_path = "magic"
    chain.config.netgen_path = "netgen"
    return chain
