"""Extract stage metrics from captured tool output.

Parsers return None when the expected line is absent; tool output formats
drift between releases and a missing metric is not a stage failure.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from .config import ProjectConfig
from .process import ToolResult
from .stages import Analysis, Stage

PASS = "✓ Pass"
FAIL = "✗ Fail"
NOT_AVAILABLE = "⚠ N/A"

_CELL_COUNT_RES = (
    re.compile(r"Number of cells:\s+(\d+)"),
    re.compile(r"^\s*(\d+)\s+cells\s*$", re.MULTILINE),
)
_CHIP_AREA_RE = re.compile(r"Chip area for (?:top )?module .*?:\s*([\d.]+)")
_WIRE_LENGTH_RE = re.compile(r"Total wire length\s*[=:]\s*([\d.]+)")
_DRC_COUNT_RE = re.compile(r"Total DRC errors found:\s*(\d+)")
_LVS_MISMATCH_RE = re.compile(r"Netlists do not match")
_LVS_MATCH_RE = re.compile(r"Netlists match|Circuits match uniquely")
_FLOAT = r"(-?[\d.]+(?:[eE][-+]?\d+)?)"
_WNS_RE = re.compile(rf"^\s*wns(?:\s+(?:max|min))?\s+{_FLOAT}", re.MULTILINE)
_TNS_RE = re.compile(rf"^\s*tns(?:\s+(?:max|min))?\s+{_FLOAT}", re.MULTILINE)
_POWER_TOTAL_RE = re.compile(rf"^Total\s+{_FLOAT}\s+{_FLOAT}\s+{_FLOAT}\s+{_FLOAT}", re.MULTILINE)


@dataclass(frozen=True)
class StageMetric:
    metric: str
    value: str
    status: str


def _last_match(pattern: re.Pattern[str], text: str) -> str | None:
    matches = pattern.findall(text)
    return matches[-1] if matches else None


def parse_cell_count(text: str) -> int | None:
    """Cell count from a Yosys ``stat`` dump (last design summary wins)."""
    for pattern in _CELL_COUNT_RES:
        value = _last_match(pattern, text)
        if value is not None:
            return int(value)
    return None


def parse_chip_area(text: str) -> float | None:
    value = _last_match(_CHIP_AREA_RE, text)
    return float(value) if value is not None else None


def parse_wire_length(text: str) -> float | None:
    """Total routed wire length in um from OpenROAD output."""
    value = _last_match(_WIRE_LENGTH_RE, text)
    return float(value) if value is not None else None


def parse_drc_count(text: str) -> int | None:
    value = _last_match(_DRC_COUNT_RE, text)
    return int(value) if value is not None else None


def parse_lvs_result(text: str) -> bool | None:
    """True when Netgen reports matching netlists, False on mismatch."""
    if _LVS_MISMATCH_RE.search(text):
        return False
    if _LVS_MATCH_RE.search(text):
        return True
    return None


@dataclass(frozen=True)
class PowerReport:
    """Design totals from OpenSTA ``report_power``, in watts."""

    internal: float
    switching: float
    leakage: float
    total: float

    @property
    def dynamic(self) -> float:
        return self.internal + self.switching


def parse_wns(text: str) -> float | None:
    """Worst negative slack in ns from OpenSTA ``report_wns``."""
    value = _last_match(_WNS_RE, text)
    return float(value) if value is not None else None


def parse_tns(text: str) -> float | None:
    value = _last_match(_TNS_RE, text)
    return float(value) if value is not None else None


def parse_power_report(text: str) -> PowerReport | None:
    matches = _POWER_TOTAL_RE.findall(text)
    if not matches:
        return None
    internal, switching, leakage, total = (float(value) for value in matches[-1])
    return PowerReport(internal=internal, switching=switching, leakage=leakage, total=total)


def _output(result: ToolResult) -> str:
    return f"{result.stdout}\n{result.stderr}"


def stage_metrics(
    stage: Stage,
    project: ProjectConfig,
    result: ToolResult,
    lvs_output: str | None = None,
) -> list[StageMetric]:
    """Completion metrics for a successful stage run.

    Args:
        stage: Stage that ran.
        project: Project the stage ran for.
        result: Result of the stage's main tool.
        lvs_output: Netgen output and report text, None if LVS did not run.
    """
    text = _output(result)
    if stage is Stage.SYNTHESIS:
        metrics = [StageMetric("Netlist", "Generated", PASS)]
        cells = parse_cell_count(text)
        if cells is not None:
            metrics.append(StageMetric("Cells", str(cells), PASS))
        area = parse_chip_area(text)
        if area is not None:
            metrics.append(StageMetric("Cell Area", f"{area:.2f} um²", PASS))
        return metrics
    if stage is Stage.FLOORPLAN:
        return [StageMetric("Die Area", f"{project.constraints.die_area_mm2:.3f} mm²", PASS)]
    if stage is Stage.ROUTING:
        metrics = [StageMetric("Status", "Complete", PASS)]
        wire_length = parse_wire_length(text)
        if wire_length is not None:
            metrics.append(StageMetric("Wire Length", f"{wire_length:g} um", PASS))
        return metrics
    if stage is Stage.VERIFICATION:
        return [_drc_metric(text), _lvs_metric(lvs_output)]
    return [StageMetric("Status", "Complete", PASS)]


def analysis_metrics(analysis: Analysis, project: ProjectConfig, result: ToolResult) -> list[StageMetric]:
    """Metrics for a successful timing or power analysis run.

    Negative slack fails timing; power over the project's budget fails power.
    Values the tool did not print are reported as N/A.
    """
    text = _output(result)
    if analysis is Analysis.TIMING:
        return [_slack_metric("WNS", parse_wns(text)), _slack_metric("TNS", parse_tns(text))]
    report = parse_power_report(text)
    if report is None:
        return [StageMetric("Total Power", "Not reported", NOT_AVAILABLE)]
    budget_mw = project.constraints.power_budget_mw
    total_mw = report.total * 1000
    return [
        StageMetric("Total Power", f"{total_mw:.3f} mW", PASS if total_mw <= budget_mw else FAIL),
        StageMetric("Dynamic", f"{report.dynamic * 1000:.3f} mW", PASS),
        StageMetric("Leakage", f"{report.leakage * 1000:.3g} mW", PASS),
    ]


def _slack_metric(metric: str, slack_ns: float | None) -> StageMetric:
    if slack_ns is None:
        return StageMetric(metric, "Not reported", NOT_AVAILABLE)
    return StageMetric(metric, f"{slack_ns:g} ns", PASS if slack_ns >= 0 else FAIL)


def _drc_metric(text: str) -> StageMetric:
    violations = parse_drc_count(text)
    if violations is None:
        return StageMetric("DRC", "Not reported", NOT_AVAILABLE)
    if violations:
        return StageMetric("DRC", f"{violations} violations", FAIL)
    return StageMetric("DRC", "Pass", PASS)


def _lvs_metric(lvs_output: str | None) -> StageMetric:
    verdict = parse_lvs_result(lvs_output) if lvs_output is not None else None
    if verdict is None:
        return StageMetric("LVS", "Pending", NOT_AVAILABLE)
    if verdict:
        return StageMetric("LVS", "Match", PASS)
    return StageMetric("LVS", "Mismatch", FAIL)


__all__ = [
    "FAIL",
    "NOT_AVAILABLE",
    "PASS",
    "PowerReport",
    "StageMetric",
    "analysis_metrics",
    "parse_cell_count",
    "parse_chip_area",
    "parse_drc_count",
    "parse_lvs_result",
    "parse_power_report",
    "parse_tns",
    "parse_wire_length",
    "parse_wns",
    "stage_metrics",
]
