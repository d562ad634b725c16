"""Tracked EDA tools and where to look for them.

Each :class:`ToolSpec` lists its deep-scan directories in priority order.
``$HOME`` in a directory is expanded at scan time to the home directory of
the environment being scanned. The first entry is the usual from-source
build location, which is checked before any system prefix.
"""

from __future__ import annotations

from dataclasses import dataclass

from ..stages import Stage

HOME_PLACEHOLDER = "$HOME"

# All-in-one flow images; any of these enables BASIC mode
FLOW_IMAGES: tuple[str, ...] = ("efabless/openlane", "efabless/openlane2")
FLOW_LABEL = "OpenLane"


@dataclass(frozen=True)
class ToolSpec:
    """Static description of one tracked tool.

    Attributes:
        name: Key used in config fields (``<name>_path``) and results.
        display_name: Name used in narration and summaries.
        command: Executable name.
        version_flag: Flag(s) that make the tool print a version and exit.
        search_dirs: Deep-scan directories, home build location first.
        container_image: Well-known image shipping the tool, if any.
        stages: Stages this tool can execute.
    """

    name: str
    display_name: str
    command: str
    version_flag: str
    search_dirs: tuple[str, ...]
    container_image: str | None = None
    stages: tuple[Stage, ...] = ()

    @property
    def home_build_dir(self) -> str:
        return self.search_dirs[0]


_SYSTEM_BIN_DIRS = ("/usr/local/bin", "/usr/bin")

YOSYS = ToolSpec(
    name="yosys",
    display_name="Yosys",
    command="yosys",
    version_flag="-V",
    search_dirs=(
        "$HOME/yosys/build",
        "$HOME/yosys",
        "/opt/yosys",
        "/usr/local/yosys",
        "$HOME/.local/yosys",
        "$HOME/oss-cad-suite",
        "/tools/yosys",
        *_SYSTEM_BIN_DIRS,
    ),
    container_image="hdlc/yosys",
    stages=(Stage.SYNTHESIS,),
)

OPENROAD = ToolSpec(
    name="openroad",
    display_name="OpenROAD",
    command="openroad",
    version_flag="-version",
    search_dirs=(
        "$HOME/OpenROAD/build/bin",
        "$HOME/OpenROAD/build/src",
        "/opt/openroad",
        "/usr/local/openroad",
        "$HOME/openroad",
        "$HOME/.local/openroad",
        "/tools/openroad",
        *_SYSTEM_BIN_DIRS,
    ),
    container_image="openroad/openroad",
    stages=(Stage.FLOORPLAN, Stage.PLACEMENT, Stage.CTS, Stage.ROUTING),
)

OPENSTA = ToolSpec(
    name="sta",
    display_name="OpenSTA",
    command="sta",
    version_flag="-version",
    search_dirs=(
        "$HOME/OpenSTA/build",
        "/opt/opensta",
        "/usr/local/opensta",
        "$HOME/.local/opensta",
        "/tools/opensta",
        *_SYSTEM_BIN_DIRS,
    ),
    container_image="openroad/opensta",
)

MAGIC = ToolSpec(
    name="magic",
    display_name="Magic",
    command="magic",
    version_flag="--version",
    search_dirs=(
        "$HOME/magic/build",
        "$HOME/magic",
        "/opt/magic",
        "/usr/local/magic",
        "$HOME/.local/magic",
        "/tools/magic",
        *_SYSTEM_BIN_DIRS,
    ),
    container_image="hdlc/magic",
    stages=(Stage.VERIFICATION,),
)

NETGEN = ToolSpec(
    name="netgen",
    display_name="Netgen",
    command="netgen",
    version_flag="-batch",
    search_dirs=(
        "$HOME/netgen/build",
        "$HOME/netgen",
        "/opt/netgen",
        "/usr/local/netgen",
        "$HOME/.local/netgen",
        "/tools/netgen",
        *_SYSTEM_BIN_DIRS,
    ),
    container_image="hdlc/netgen",
    stages=(Stage.VERIFICATION,),
)

KLAYOUT = ToolSpec(
    name="klayout",
    display_name="KLayout",
    command="klayout",
    version_flag="-v",
    search_dirs=(
        "$HOME/klayout/build",
        "$HOME/klayout",
        "/opt/klayout",
        "/usr/local/klayout",
        "$HOME/.local/klayout",
        *_SYSTEM_BIN_DIRS,
    ),
)

TRACKED_TOOLS: tuple[ToolSpec, ...] = (YOSYS, OPENROAD, OPENSTA, MAGIC, NETGEN, KLAYOUT)

_BY_NAME = {spec.name: spec for spec in TRACKED_TOOLS}


def get_tool_spec(name: str) -> ToolSpec:
    """Look up a tracked tool by config key (``"yosys"``, ``"sta"``, ...)."""
    try:
        return _BY_NAME[name.lower()]
    except KeyError:
        raise KeyError(f"unknown tool: {name}") from None


def expand_home(directory: str, home: str) -> str:
    """Replace a leading ``$HOME`` with ``home`` (unchanged when home is empty)."""
    if home and directory.startswith(HOME_PLACEHOLDER):
        return home.rstrip("/") + directory[len(HOME_PLACEHOLDER) :]
    return directory


__all__ = [
    "FLOW_IMAGES",
    "FLOW_LABEL",
    "HOME_PLACEHOLDER",
    "KLAYOUT",
    "MAGIC",
    "NETGEN",
    "OPENROAD",
    "OPENSTA",
    "TRACKED_TOOLS",
    "YOSYS",
    "ToolSpec",
    "expand_home",
    "get_tool_spec",
]
