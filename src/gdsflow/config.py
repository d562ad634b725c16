"""Configuration models for projects and the EDA toolchain.

- :class:`ProjectConfig` / :class:`Constraints` / :class:`BuildRecord` describe
  a design project. They are owned by :class:`gdsflow.project.ProjectManager`.
- :class:`ToolchainConfig` holds per-tool binary paths and execution flags.
  It is persisted as JSON in the user configuration directory.

The config directory can be overridden with ``GDSFLOW_CONFIG_DIR``.
"""

from __future__ import annotations

import json
import logging
import os
from datetime import datetime
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)

_ENV_CONFIG_DIR = "GDSFLOW_CONFIG_DIR"
TOOLCHAIN_CONFIG_FILENAME = "toolchain.json"
DEFAULT_FLOW_IMAGE = "efabless/openlane:latest"

# Configured paths of this form run the tool inside a container image
DOCKER_PATH_PREFIX = "docker:"

# Configured paths of this form run the tool inside the bridge environment;
# the rest may itself be a docker: path, run by the bridge's docker
BRIDGE_PATH_PREFIX = "wsl:"


class ToolchainConfigError(ValueError):
    """Raised when the toolchain configuration file cannot be parsed."""


class _ConfigBase(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)


class Constraints(_ConfigBase):
    clock_period_ns: float = Field(10.0, gt=0)
    voltage_v: float = Field(1.8, gt=0)
    power_budget_mw: float = Field(100.0, ge=0)
    floorplan_width_um: float = Field(1000.0, gt=0)
    floorplan_height_um: float = Field(1000.0, gt=0)
    utilization: float = Field(0.7, ge=0, le=1)
    routing_layers: int = Field(6, ge=1)
    clock_port: str = Field("clk", min_length=1)

    @property
    def die_area_mm2(self) -> float:
        return self.floorplan_width_um * self.floorplan_height_um / 1_000_000


class BuildRecord(_ConfigBase):
    stage: str
    timestamp: datetime = Field(default_factory=datetime.now)
    success: bool
    metrics: dict[str, Any] = Field(default_factory=dict)


class ProjectConfig(_ConfigBase):
    """A design project: sources, PDK selection, constraints and history."""

    name: str = Field("Untitled", min_length=1)
    root: Path = Path(".")
    rtl_files: list[str] = Field(default_factory=list)
    pdk: str = "sky130"
    top_module: str = Field("top", min_length=1)
    constraints: Constraints = Field(default_factory=Constraints)
    settings: dict[str, Any] = Field(default_factory=dict)
    build_history: list[BuildRecord] = Field(default_factory=list)
    created: datetime = Field(default_factory=datetime.now)
    last_modified: datetime = Field(default_factory=datetime.now)

    @field_validator("rtl_files")
    @classmethod
    def _reject_duplicate_sources(cls, value: list[str]) -> list[str]:
        seen: set[str] = set()
        for path in value:
            if path in seen:
                raise ValueError(f"duplicate RTL source: {path}")
            seen.add(path)
        return value

    def source_paths(self) -> list[str]:
        """RTL sources as absolute paths; relative entries are under ``root``."""
        return [path if _is_absolute(path) else str((self.root / path).resolve()) for path in self.rtl_files]


class ToolchainConfig(_ConfigBase):
    """Where each tool lives and how it is launched.

    An empty path means "not configured"; detection fills it in. A path of
    the form ``docker:<image>`` runs the tool inside that container image,
    and a ``wsl:`` prefix runs it inside the bridge environment. Plain paths
    run on the host unless ``use_bridge`` sends every plain path to the
    bridge.
    """

    yosys_path: str = ""
    openroad_path: str = ""
    sta_path: str = ""
    magic_path: str = ""
    netgen_path: str = ""
    klayout_path: str = ""
    pdk_root: str = ""
    use_bridge: bool = False
    use_docker: bool = False
    docker_image: str = DEFAULT_FLOW_IMAGE

    def path_for(self, tool: str) -> str:
        """Configured path for ``tool`` (e.g. ``"yosys"``)."""
        return str(getattr(self, _path_field(tool)))

    def set_path(self, tool: str, value: str) -> None:
        setattr(self, _path_field(tool), value)


def _is_absolute(path: str) -> bool:
    # Drive-letter and POSIX absolute paths both count
    return PurePosixPath(path).is_absolute() or PureWindowsPath(path).is_absolute()


def _path_field(tool: str) -> str:
    field_name = f"{tool.lower()}_path"
    if field_name not in ToolchainConfig.model_fields:
        raise KeyError(f"unknown tool: {tool}")
    return field_name


def default_config_dir() -> Path:
    """Resolve the directory that holds ``toolchain.json``."""
    override = os.environ.get(_ENV_CONFIG_DIR)
    if override:
        return Path(override)
    appdata = os.environ.get("APPDATA")
    if os.name == "nt" and appdata:
        return Path(appdata) / "gdsflow"
    return Path.home() / ".config" / "gdsflow"


def default_toolchain_config_path() -> Path:
    return default_config_dir() / TOOLCHAIN_CONFIG_FILENAME


def load_toolchain_config(path: Path | None = None) -> ToolchainConfig:
    """Load toolchain configuration from JSON.

    A missing file yields the defaults.

    Raises:
        ToolchainConfigError: If the file exists but is not a valid config.
    """
    config_path = path or default_toolchain_config_path()
    if not config_path.exists():
        return ToolchainConfig()

    try:
        payload = json.loads(config_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ToolchainConfigError(f"toolchain config is not valid JSON: {config_path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise ToolchainConfigError("toolchain config must be a JSON object")
    try:
        return ToolchainConfig.model_validate(payload)
    except ValidationError as exc:
        raise ToolchainConfigError(f"invalid toolchain config {config_path}: {exc}") from exc


def save_toolchain_config(config: ToolchainConfig, path: Path | None = None) -> Path:
    config_path = path or default_toolchain_config_path()
    config_path.parent.mkdir(parents=True, exist_ok=True)
    config_path.write_text(config.model_dump_json(indent=2) + "\n", encoding="utf-8")
    return config_path


class Toolchain:
    """Holds the live :class:`ToolchainConfig` and saves it on demand.

    An unreadable config file is logged and replaced by defaults so the
    application can still start.
    """

    def __init__(self, config_path: Path | None = None) -> None:
        self.config_path = config_path or default_toolchain_config_path()
        try:
            self.config = load_toolchain_config(self.config_path)
        except ToolchainConfigError as exc:
            logger.warning("%s; using default toolchain config", exc)
            self.config = ToolchainConfig()

    def save_config(self) -> Path:
        saved = save_toolchain_config(self.config, self.config_path)
        logger.info("toolchain config saved to %s", saved)
        return saved


__all__ = [
    "BRIDGE_PATH_PREFIX",
    "DEFAULT_FLOW_IMAGE",
    "DOCKER_PATH_PREFIX",
    "TOOLCHAIN_CONFIG_FILENAME",
    "BuildRecord",
    "Constraints",
    "ProjectConfig",
    "Toolchain",
    "ToolchainConfig",
    "ToolchainConfigError",
    "default_config_dir",
    "default_toolchain_config_path",
    "load_toolchain_config",
    "save_toolchain_config",
]
