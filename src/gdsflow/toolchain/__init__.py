"""Tool catalog, detection and launching."""

from .catalog import FLOW_IMAGES, TRACKED_TOOLS, ToolSpec, get_tool_spec
from .detector import (
    InstallType,
    OperationMode,
    ToolchainDetector,
    ToolDetectionResult,
    ToolInfo,
    derive_operation_mode,
)
from .images import parse_image_ref
from .installer import BridgeInstallCheck, ToolchainInstaller
from .launch import LaunchPlan, ToolLauncher

__all__ = [
    "FLOW_IMAGES",
    "TRACKED_TOOLS",
    "BridgeInstallCheck",
    "InstallType",
    "LaunchPlan",
    "OperationMode",
    "ToolDetectionResult",
    "ToolInfo",
    "ToolLauncher",
    "ToolSpec",
    "ToolchainDetector",
    "ToolchainInstaller",
    "derive_operation_mode",
    "get_tool_spec",
    "parse_image_ref",
]
