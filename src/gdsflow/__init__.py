"""gdsflow: RTL-to-GDSII toolchain orchestration.

Drives an open-source hardware design flow (Yosys synthesis, OpenROAD
place-and-route, Magic DRC, Netgen LVS) by invoking externally installed tool
binaries on the host, inside a WSL bridge environment, or in container images.

Public API
----------
- :class:`StagePipeline` - run one stage or the complete flow, stop, detect tools
- :class:`ToolchainDetector` - locate the tracked tools and derive the operation mode
- :class:`ScriptGenerator` - build the Yosys / OpenROAD / Magic stage scripts
- :class:`BridgeEnvironment` - run commands inside the bridge environment
- :class:`ProcessRunner` - spawn a tool and stream its output
- :class:`ProjectManager` / :class:`Toolchain` - project and toolchain config

Example
-------
>>> import asyncio
>>> from pathlib import Path
>>> from gdsflow import ProjectManager, Stage, StagePipeline, Toolchain
>>> project = ProjectManager().load_project(Path("counter.gdsproj.json"))
>>> pipeline = StagePipeline(Toolchain())
>>> pipeline.events.subscribe_log(print)
>>> outcomes = asyncio.run(pipeline.run_complete_flow(project))
"""

from __future__ import annotations

__version__ = "0.1.0"

from gdsflow.bridge import BridgeEnvironment, bridge_to_host_path, get_bridge_environment, host_to_bridge_path
from gdsflow.config import (
    Constraints,
    ProjectConfig,
    Toolchain,
    ToolchainConfig,
    ToolchainConfigError,
    load_toolchain_config,
    save_toolchain_config,
)
from gdsflow.events import EventHub, LogEvent, ProgressEvent, Severity, StageCompletedEvent
from gdsflow.pipeline import PipelineSettings, PipelineState, StageOutcome, StagePipeline
from gdsflow.process import CancellationToken, FailureKind, IProcessRunner, ProcessRunner, ToolResult
from gdsflow.project import ProjectLoadError, ProjectManager, load_project
from gdsflow.scripts import ScriptGenerator
from gdsflow.stages import STAGE_ORDER, Stage
from gdsflow.toolchain import (
    InstallType,
    OperationMode,
    ToolchainDetector,
    ToolDetectionResult,
    ToolInfo,
    ToolLauncher,
)

__all__ = [
    "STAGE_ORDER",
    "BridgeEnvironment",
    "CancellationToken",
    "Constraints",
    "EventHub",
    "FailureKind",
    "IProcessRunner",
    "InstallType",
    "LogEvent",
    "OperationMode",
    "PipelineSettings",
    "PipelineState",
    "ProcessRunner",
    "ProgressEvent",
    "ProjectConfig",
    "ProjectLoadError",
    "ProjectManager",
    "ScriptGenerator",
    "Severity",
    "Stage",
    "StageCompletedEvent",
    "StageOutcome",
    "StagePipeline",
    "ToolDetectionResult",
    "ToolInfo",
    "ToolLauncher",
    "Toolchain",
    "ToolchainConfig",
    "ToolchainConfigError",
    "ToolchainDetector",
    "ToolResult",
    "__version__",
    "bridge_to_host_path",
    "get_bridge_environment",
    "host_to_bridge_path",
    "load_project",
    "load_toolchain_config",
    "save_toolchain_config",
]
