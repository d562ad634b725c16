"""Stage kinds and the ordered stage table.

The table fixes the artifact hand-off contract: every stage reads the file
its upstream stage declared as output and writes its own fixed filename.
Changing an output name here invalidates the downstream stage's script.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path

NETLIST_FILENAME = "netlist.v"
NETLIST_JSON_FILENAME = "netlist.json"
FLOORPLAN_DEF = "floorplan.def"
PLACEMENT_DEF = "placement.def"
CTS_DEF = "cts.def"
ROUTED_DEF = "routed.def"
LAYOUT_SPICE = "layout.spice"
LVS_REPORT = "lvs_report.txt"


class Stage(str, Enum):
    SYNTHESIS = "synthesis"
    FLOORPLAN = "floorplan"
    PLACEMENT = "placement"
    CTS = "cts"
    ROUTING = "routing"
    VERIFICATION = "verification"

    @classmethod
    def parse(cls, name: str) -> Stage:
        try:
            return cls(name.strip().lower())
        except ValueError:
            valid = ", ".join(stage.value for stage in cls)
            raise ValueError(f"Unknown stage: {name!r} (expected one of: {valid})") from None

    @property
    def definition(self) -> StageDefinition:
        return STAGE_TABLE[self]

    @property
    def display_name(self) -> str:
        return STAGE_TABLE[self].display_name


@dataclass(frozen=True)
class StageDefinition:
    """Static description of one stage.

    Attributes:
        stage: The stage kind.
        display_name: Name used in progress and completion events.
        tool: Tool that executes the stage's script.
        script_name: Script filename written to the stage directory.
        outputs: Artifact filenames the stage produces, primary first.
        upstream: Stage whose primary output this stage consumes.
    """

    stage: Stage
    display_name: str
    tool: str
    script_name: str
    outputs: tuple[str, ...]
    upstream: Stage | None = None

    @property
    def primary_output(self) -> str:
        return self.outputs[0]

    @property
    def required_input(self) -> str | None:
        if self.upstream is None:
            return None
        return STAGE_TABLE[self.upstream].primary_output


STAGE_ORDER: tuple[Stage, ...] = (
    Stage.SYNTHESIS,
    Stage.FLOORPLAN,
    Stage.PLACEMENT,
    Stage.CTS,
    Stage.ROUTING,
    Stage.VERIFICATION,
)

STAGE_TABLE: dict[Stage, StageDefinition] = {
    Stage.SYNTHESIS: StageDefinition(
        stage=Stage.SYNTHESIS,
        display_name="Synthesis",
        tool="yosys",
        script_name="synthesis.ys",
        outputs=(NETLIST_FILENAME, NETLIST_JSON_FILENAME),
    ),
    Stage.FLOORPLAN: StageDefinition(
        stage=Stage.FLOORPLAN,
        display_name="Floorplan",
        tool="openroad",
        script_name="floorplan.tcl",
        outputs=(FLOORPLAN_DEF,),
        upstream=Stage.SYNTHESIS,
    ),
    Stage.PLACEMENT: StageDefinition(
        stage=Stage.PLACEMENT,
        display_name="Placement",
        tool="openroad",
        script_name="placement.tcl",
        outputs=(PLACEMENT_DEF,),
        upstream=Stage.FLOORPLAN,
    ),
    Stage.CTS: StageDefinition(
        stage=Stage.CTS,
        display_name="CTS",
        tool="openroad",
        script_name="cts.tcl",
        outputs=(CTS_DEF,),
        upstream=Stage.PLACEMENT,
    ),
    Stage.ROUTING: StageDefinition(
        stage=Stage.ROUTING,
        display_name="Routing",
        tool="openroad",
        script_name="routing.tcl",
        outputs=(ROUTED_DEF,),
        upstream=Stage.CTS,
    ),
    Stage.VERIFICATION: StageDefinition(
        stage=Stage.VERIFICATION,
        display_name="Verification",
        tool="magic",
        script_name="drc.tcl",
        outputs=(LAYOUT_SPICE, LVS_REPORT),
        upstream=Stage.ROUTING,
    ),
}


class Analysis(str, Enum):
    """Sign-off analyses run with OpenSTA on the synthesized netlist."""

    TIMING = "timing"
    POWER = "power"

    @classmethod
    def parse(cls, name: str) -> Analysis:
        try:
            return cls(name.strip().lower())
        except ValueError:
            valid = ", ".join(analysis.value for analysis in cls)
            raise ValueError(f"Unknown analysis: {name!r} (expected one of: {valid})") from None

    @property
    def display_name(self) -> str:
        return f"{self.value.capitalize()} Analysis"

    @property
    def script_name(self) -> str:
        return f"{self.value}.tcl"


ANALYSIS_TOOL = "sta"

OUTPUT_DIR_NAME = "gdsflow_output"


def stage_dir(project_root: Path, stage: Stage) -> Path:
    """Directory a stage runs in, nested under the project root."""
    return project_root / OUTPUT_DIR_NAME / stage.value


def upstream_artifact(project_root: Path, stage: Stage) -> Path | None:
    """Path of the file ``stage`` needs from its upstream stage."""
    definition = STAGE_TABLE[stage]
    if definition.upstream is None or definition.required_input is None:
        return None
    return stage_dir(project_root, definition.upstream) / definition.required_input


def analysis_dir(project_root: Path, analysis: Analysis) -> Path:
    """Directory an analysis runs in, beside the stage directories."""
    return project_root / OUTPUT_DIR_NAME / analysis.value


def analysis_input(project_root: Path) -> Path:
    """Netlist every analysis reads."""
    return stage_dir(project_root, Stage.SYNTHESIS) / NETLIST_FILENAME


__all__ = [
    "ANALYSIS_TOOL",
    "CTS_DEF",
    "FLOORPLAN_DEF",
    "LAYOUT_SPICE",
    "LVS_REPORT",
    "NETLIST_FILENAME",
    "NETLIST_JSON_FILENAME",
    "OUTPUT_DIR_NAME",
    "PLACEMENT_DEF",
    "ROUTED_DEF",
    "STAGE_ORDER",
    "STAGE_TABLE",
    "Analysis",
    "Stage",
    "StageDefinition",
    "analysis_dir",
    "analysis_input",
    "stage_dir",
    "upstream_artifact",
]
