"""Tool control-script generation.

:class:`ScriptGenerator` maps ``(stage, project, working_dir)`` to the text of
the Yosys / OpenROAD / Magic script for that stage, and builds the matching
command-line arguments. Analyses get an OpenSTA script the same way.
Generation writes nothing: identical inputs always give byte-identical
output. Relative RTL sources are taken relative to the project root.

Stage scripts run with the stage directory as working directory. Outputs are
written under their fixed names there; upstream artifacts are read from the
sibling stage directory (``../<upstream>/<file>``).
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath

from .config import ProjectConfig
from .stages import (
    LAYOUT_SPICE,
    LVS_REPORT,
    NETLIST_FILENAME,
    NETLIST_JSON_FILENAME,
    STAGE_TABLE,
    Analysis,
    Stage,
)

PathMapper = Callable[[str], str]

# Switching activity assumed on primary inputs for power analysis
DEFAULT_INPUT_ACTIVITY = 0.1


@dataclass(frozen=True)
class PdkProfile:
    """Library files and layer names for one process design kit.

    Library paths are relative to the PDK root; without a configured root
    only the basename is emitted and the file is expected in the stage dir.
    """

    key: str
    label: str
    liberty: str | None
    tech_lef: str
    cell_lef: str
    site: str
    routing_layers: tuple[str, ...]
    clock_buffer: str | None = None
    magic_tech: str | None = None
    netgen_setup: str | None = None


SKY130 = PdkProfile(
    key="sky130",
    label="Sky130",
    liberty="sky130A/libs.ref/sky130_fd_sc_hd/lib/sky130_fd_sc_hd__tt_025C_1v80.lib",
    tech_lef="sky130A/libs.ref/sky130_fd_sc_hd/techlef/sky130_fd_sc_hd.tlef",
    cell_lef="sky130A/libs.ref/sky130_fd_sc_hd/lef/sky130_fd_sc_hd_merged.lef",
    site="unithd",
    routing_layers=("li1", "met1", "met2", "met3", "met4", "met5"),
    clock_buffer="sky130_fd_sc_hd__clkbuf_16",
    magic_tech="sky130A/libs.tech/magic/sky130A.tech",
    netgen_setup="sky130A/libs.tech/netgen/sky130A_setup.tcl",
)

GF180MCU = PdkProfile(
    key="gf180",
    label="GF180MCU",
    liberty="gf180mcuD/libs.ref/gf180mcu_fd_sc_mcu7t5v0/lib/gf180mcu_fd_sc_mcu7t5v0__tt_025C_5v00.lib",
    tech_lef="gf180mcuD/libs.ref/gf180mcu_fd_sc_mcu7t5v0/techlef/gf180mcu_fd_sc_mcu7t5v0.tlef",
    cell_lef="gf180mcuD/libs.ref/gf180mcu_fd_sc_mcu7t5v0/lef/gf180mcu_fd_sc_mcu7t5v0.lef",
    site="GF018hv5v_mcu_sc7",
    routing_layers=("Metal1", "Metal2", "Metal3", "Metal4", "Metal5"),
    clock_buffer="gf180mcu_fd_sc_mcu7t5v0__clkbuf_16",
    magic_tech="gf180mcuD/libs.tech/magic/gf180mcuD.tech",
    netgen_setup="gf180mcuD/libs.tech/netgen/gf180mcuD_setup.tcl",
)

GENERIC = PdkProfile(
    key="",
    label="Generic",
    liberty=None,
    tech_lef="tech.lef",
    cell_lef="cells.lef",
    site="core",
    routing_layers=tuple(f"metal{index}" for index in range(1, 11)),
)

_PDK_PROFILES: tuple[PdkProfile, ...] = (SKY130, GF180MCU)


def select_pdk_profile(pdk: str) -> PdkProfile:
    """Pick the profile whose key is a substring of the PDK identifier."""
    lowered = pdk.lower()
    for profile in _PDK_PROFILES:
        if profile.key in lowered:
            return profile
    return GENERIC


def _fmt(value: float) -> str:
    return f"{value:g}"


def _identity(path: str) -> str:
    return path


@dataclass(frozen=True)
class ScriptGenerator:
    """Build stage scripts and tool arguments.

    Attributes:
        pdk_root: Directory holding PDK libraries, in the convention of the
            environment the tool runs in. Empty emits bare filenames.
        path_mapper: Applied to every absolute path placed in a script
            (RTL sources, working dir); used to translate host paths for
            tools that run inside the bridge.
    """

    pdk_root: str = ""
    path_mapper: PathMapper = field(default=_identity)

    def generate(self, stage: Stage, project: ProjectConfig, working_dir: Path) -> str:
        profile = select_pdk_profile(project.pdk)
        if stage is Stage.SYNTHESIS:
            lines = self._synthesis(project, working_dir, profile)
        elif stage is Stage.VERIFICATION:
            lines = self._magic_drc(project, working_dir, profile)
        else:
            lines = self._openroad(stage, project, working_dir, profile)
        return "\n".join(lines) + "\n"

    def tool_args(self, stage: Stage, project: ProjectConfig) -> list[str]:
        """Command-line arguments for the stage's tool (script is relative)."""
        script = STAGE_TABLE[stage].script_name
        if stage is Stage.SYNTHESIS:
            return ["-s", script]
        if stage is Stage.VERIFICATION:
            args = ["-noconsole", "-dnull"]
            profile = select_pdk_profile(project.pdk)
            if profile.magic_tech and self.pdk_root:
                args.extend(["-T", self._library(profile.magic_tech)])
            args.append(script)
            return args
        return ["-exit", script]

    def generate_analysis(self, analysis: Analysis, project: ProjectConfig, working_dir: Path) -> str:
        """OpenSTA script for ``analysis`` over the synthesized netlist."""
        profile = select_pdk_profile(project.pdk)
        constraints = project.constraints
        liberty = self._library(profile.liberty) if profile.liberty else "cells.lib"
        lines = self._header("OpenSTA", f"Analysis: {analysis.value}", project, working_dir)
        lines.extend(
            [
                f"read_liberty {liberty}",
                f"read_verilog {_upstream(Stage.SYNTHESIS, NETLIST_FILENAME)}",
                f"link_design {project.top_module}",
                f"create_clock -name core_clock -period {_fmt(constraints.clock_period_ns)} "
                f"[get_ports {constraints.clock_port}]",
                "set_input_delay 0 -clock core_clock [all_inputs]",
                "set_output_delay 0 -clock core_clock [all_outputs]",
            ]
        )
        if analysis is Analysis.TIMING:
            lines.append("report_checks -path_delay max -digits 3")
            lines.append("report_wns")
            lines.append("report_tns")
        else:
            lines.append(f"set_power_activity -input -activity {_fmt(DEFAULT_INPUT_ACTIVITY)}")
            lines.append("report_power")
        return "\n".join(lines) + "\n"

    def analysis_args(self, analysis: Analysis) -> list[str]:
        return ["-no_splash", "-exit", analysis.script_name]

    def lvs_args(self, project: ProjectConfig) -> list[str]:
        """Netgen batch LVS arguments comparing layout against the netlist."""
        profile = select_pdk_profile(project.pdk)
        setup = self._library(profile.netgen_setup) if profile.netgen_setup else "setup.tcl"
        netlist = _upstream(Stage.SYNTHESIS, NETLIST_FILENAME)
        return [
            "-batch",
            "lvs",
            f"{LAYOUT_SPICE} {project.top_module}",
            f"{netlist} {project.top_module}",
            setup,
            LVS_REPORT,
        ]

    def _library(self, relative: str) -> str:
        if not self.pdk_root:
            return PurePosixPath(relative).name
        return f"{self.pdk_root.rstrip('/')}/{relative}"

    def _header(self, tool: str, heading: str, project: ProjectConfig, working_dir: Path) -> list[str]:
        return [
            f"# {tool} script generated by gdsflow",
            f"# {heading}",
            f"# Project: {project.name}",
            f"# PDK: {project.pdk}",
            f"# Working directory: {self.path_mapper(str(working_dir))}",
            "",
        ]

    def _synthesis(self, project: ProjectConfig, working_dir: Path, profile: PdkProfile) -> list[str]:
        lines = self._header("Yosys", "Stage: synthesis", project, working_dir)
        for rtl_file in project.source_paths():
            lines.append(f"read_verilog {_yosys_quote(self.path_mapper(rtl_file))}")
        lines.append(f"hierarchy -check -top {project.top_module}")
        lines.append("proc; opt; fsm; opt; memory; opt")
        if profile.liberty:
            liberty = self._library(profile.liberty)
            lines.append(f"# {profile.label} technology mapping")
            lines.append("techmap -map +/techmap.v")
            lines.append(f"dfflibmap -liberty {liberty}")
            lines.append(f"abc -liberty {liberty}")
        else:
            lines.append("# Generic technology mapping")
            lines.append("techmap")
            lines.append("abc")
        lines.append("clean")
        lines.append(f"write_verilog -noattr {NETLIST_FILENAME}")
        lines.append(f"write_json {NETLIST_JSON_FILENAME}")
        lines.append(f"stat -liberty {self._library(profile.liberty)}" if profile.liberty else "stat")
        return lines

    def _openroad_libraries(self, profile: PdkProfile) -> list[str]:
        lines = [
            f"read_lef {self._library(profile.tech_lef)}",
            f"read_lef {self._library(profile.cell_lef)}",
        ]
        if profile.liberty:
            lines.append(f"read_liberty {self._library(profile.liberty)}")
        return lines

    def _openroad(
        self,
        stage: Stage,
        project: ProjectConfig,
        working_dir: Path,
        profile: PdkProfile,
    ) -> list[str]:
        constraints = project.constraints
        definition = STAGE_TABLE[stage]
        lines = self._header("OpenROAD", f"Stage: {stage.value}", project, working_dir)
        if stage is Stage.FLOORPLAN:
            lines.append(
                f"# Floorplan: {_fmt(constraints.floorplan_width_um)}x"
                f"{_fmt(constraints.floorplan_height_um)} um"
            )
        lines.extend(self._openroad_libraries(profile))

        if stage is Stage.FLOORPLAN:
            aspect_ratio = constraints.floorplan_height_um / constraints.floorplan_width_um
            lines.append(f"read_verilog {_upstream(Stage.SYNTHESIS, NETLIST_FILENAME)}")
            lines.append(f"link_design {project.top_module}")
            lines.append(f"initialize_floorplan -utilization {_fmt(constraints.utilization * 100)} \\")
            lines.append(f"  -aspect_ratio {_fmt(aspect_ratio)} \\")
            lines.append("  -core_space 2 \\")
            lines.append(f"  -site {profile.site}")
            lines.append("make_tracks")
        else:
            upstream = definition.upstream
            if upstream is None:
                raise ValueError(f"{stage.value} has no upstream stage to read")
            lines.append(f"read_def {_upstream(upstream, STAGE_TABLE[upstream].primary_output)}")
            if stage is Stage.PLACEMENT:
                lines.append(f"global_placement -density {_fmt(constraints.utilization)}")
                lines.append("detailed_placement")
            elif stage is Stage.CTS:
                lines.append(
                    f"create_clock -name core_clock -period {_fmt(constraints.clock_period_ns)} "
                    f"[get_ports {constraints.clock_port}]"
                )
                if profile.clock_buffer:
                    lines.append(
                        f"clock_tree_synthesis -root_buf {profile.clock_buffer} "
                        f"-buf_list {profile.clock_buffer}"
                    )
                else:
                    lines.append("clock_tree_synthesis")
                lines.append("detailed_placement")
            elif stage is Stage.ROUTING:
                count = max(1, min(constraints.routing_layers, len(profile.routing_layers)))
                layers = profile.routing_layers[:count]
                lines.append(f"# Routing layers: {constraints.routing_layers}")
                lines.append(f"set_routing_layers -signal {layers[0]}-{layers[-1]}")
                lines.append("global_route")
                lines.append("detailed_route")
                lines.append("report_wire_length -net *")

        lines.append(f"write_def {definition.primary_output}")
        return lines

    def _magic_drc(self, project: ProjectConfig, working_dir: Path, profile: PdkProfile) -> list[str]:
        lines = self._header("Magic DRC", "Stage: verification", project, working_dir)
        routing = STAGE_TABLE[Stage.ROUTING]
        lines.extend(
            [
                f"lef read {self._library(profile.tech_lef)}",
                f"lef read {self._library(profile.cell_lef)}",
                f"def read {_upstream(Stage.ROUTING, routing.primary_output)}",
                f"load {project.top_module}",
                "drc on",
                "drc check",
                "drc catchup",
                "drc count total",
                "set drcresult [drc listall why]",
                'puts "DRC violations: $drcresult"',
                "extract all",
                "ext2spice lvs",
                f"ext2spice -o {LAYOUT_SPICE}",
                "quit -noprompt",
            ]
        )
        return lines


def _upstream(stage: Stage, filename: str) -> str:
    return f"../{stage.value}/{filename}"


def _yosys_quote(path: str) -> str:
    if any(ch.isspace() for ch in path):
        return '"' + path.replace('"', '\\"') + '"'
    return path


__all__ = [
    "GENERIC",
    "GF180MCU",
    "SKY130",
    "PathMapper",
    "PdkProfile",
    "ScriptGenerator",
    "select_pdk_profile",
]
