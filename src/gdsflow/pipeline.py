"""Stage pipeline: run design stages one at a time and report through events.

The pipeline is either IDLE or RUNNING a stage. Entry is guarded by a lock
acquired without blocking, so a second ``run_stage`` / ``run_complete_flow``
started from any thread or event loop is rejected with a single Warning log.
The state always returns to IDLE, whatever the stage outcome.

Each stage:

1. creates ``<root>/gdsflow_output/<stage>`` and the run directory
   ``<workspace>/<project>/run_<timestamp>/<stage>``;
2. checks its upstream artifact, failing without spawning a process;
3. writes its generated script into the stage directory;
4. launches the configured tool;
5. on success emits Progress(100) and StageCompleted events, and archives
   its outputs into the run directory.

Timing and power analyses (:meth:`StagePipeline.run_analysis`) run OpenSTA on
the synthesized netlist in ``<root>/gdsflow_output/<analysis>``.

Example:
    >>> pipeline = StagePipeline(Toolchain())
    >>> outcome = asyncio.run(pipeline.run_stage(Stage.SYNTHESIS, project))
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .bridge import BridgeEnvironment, get_bridge_environment
from .config import BRIDGE_PATH_PREFIX, ProjectConfig, Toolchain, ToolchainConfig
from .events import EventHub, Severity
from .process import CancellationToken, FailureKind, IProcessRunner, ProcessRunner, ToolResult
from .reports import StageMetric, analysis_metrics, parse_drc_count, stage_metrics
from .scripts import ScriptGenerator
from .stages import (
    ANALYSIS_TOOL,
    LVS_REPORT,
    STAGE_ORDER,
    STAGE_TABLE,
    Analysis,
    Stage,
    analysis_dir,
    analysis_input,
    stage_dir,
    upstream_artifact,
)
from .toolchain.catalog import TRACKED_TOOLS
from .toolchain.detector import ToolchainDetector, ToolDetectionResult
from .toolchain.launch import ToolLauncher

logger = logging.getLogger(__name__)

_ENV_WORKSPACE = "GDSFLOW_WORKSPACE"

# Pause between stages of a complete flow
DEFAULT_INTER_STAGE_DELAY_SEC: float = 0.5

RUN_DIR_TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"

# Progress checkpoints within one stage
_PROGRESS_STARTED = 10
_PROGRESS_SCRIPT_READY = 30
_PROGRESS_TOOL_DONE = 60
_PROGRESS_LVS = 80


def default_workspace_root() -> Path:
    override = os.environ.get(_ENV_WORKSPACE)
    if override:
        return Path(override)
    return Path.home() / "gdsflow_runs"


class PipelineState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class PipelineSettings:
    """Tunables for stage execution.

    Attributes:
        stop_on_failure: End a complete flow at the first failed stage.
        inter_stage_delay: Seconds to pause between flow stages.
        workspace_root: Root of the timestamped run directories.
        stage_timeout: Seconds before a stage's tool is killed; None waits.
        archive_outputs: Copy successful stage outputs into the run dir.
    """

    stop_on_failure: bool = False
    inter_stage_delay: float = DEFAULT_INTER_STAGE_DELAY_SEC
    workspace_root: Path | None = None
    stage_timeout: float | None = None
    archive_outputs: bool = True


@dataclass(frozen=True)
class StageOutcome:
    stage: Stage
    result: ToolResult
    stage_dir: Path
    run_dir: Path
    metrics: tuple[StageMetric, ...] = field(default_factory=tuple)

    @property
    def success(self) -> bool:
        return self.result.success

    @property
    def cancelled(self) -> bool:
        return self.result.cancelled


@dataclass(frozen=True)
class AnalysisOutcome:
    analysis: Analysis
    result: ToolResult
    work_dir: Path
    metrics: tuple[StageMetric, ...] = field(default_factory=tuple)

    @property
    def success(self) -> bool:
        return self.result.success


class StagePipeline:
    """Drive the RTL-to-GDSII stages for a project.

    Args:
        toolchain: Live toolchain configuration holder.
        runner: Process runner for host tools; a test double may be passed.
        bridge: Bridge environment; detected on first use when omitted.
        events: Event hub; a new one is created when omitted.
        settings: Execution tunables.
        clock: Source of run-directory timestamps.
    """

    def __init__(
        self,
        toolchain: Toolchain,
        *,
        runner: IProcessRunner | None = None,
        bridge: BridgeEnvironment | None = None,
        events: EventHub | None = None,
        settings: PipelineSettings | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.toolchain = toolchain
        self.runner: IProcessRunner = runner or ProcessRunner()
        self.events = events or EventHub()
        self.settings = settings or PipelineSettings()
        self._bridge = bridge
        self._clock = clock
        self._lock = threading.Lock()
        self._state = PipelineState.IDLE
        self._current_stage: Stage | None = None
        self._token: CancellationToken | None = None

    @property
    def config(self) -> ToolchainConfig:
        return self.toolchain.config

    @property
    def bridge(self) -> BridgeEnvironment:
        if self._bridge is None:
            self._bridge = get_bridge_environment()
        return self._bridge

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def current_stage(self) -> Stage | None:
        return self._current_stage

    @property
    def is_running(self) -> bool:
        return self._state is PipelineState.RUNNING

    def _try_enter(self) -> CancellationToken | None:
        """Token for the new run, or None when another run holds the lock."""
        if not self._lock.acquire(blocking=False):
            return None
        self._state = PipelineState.RUNNING
        token = CancellationToken()
        self._token = token
        return token

    def _leave(self) -> None:
        self._current_stage = None
        self._token = None
        self._state = PipelineState.IDLE
        self._lock.release()

    async def run_stage(self, stage: Stage | str, project: ProjectConfig | None) -> StageOutcome | None:
        """Run a single stage.

        Returns:
            The stage outcome, or None when the request was rejected.
        """
        token = self._try_enter()
        if token is None:
            self.events.log("Another stage is already running. Please wait.", Severity.WARNING)
            return None
        try:
            if project is None:
                self.events.log("No project loaded. Please create or open a project first.", Severity.ERROR)
                return None
            try:
                stage = Stage.parse(stage) if not isinstance(stage, Stage) else stage
            except ValueError as exc:
                self.events.log(str(exc), Severity.ERROR)
                return None
            return await self._run_stage(stage, project, token, self._run_root(project))
        finally:
            self._leave()

    async def run_complete_flow(self, project: ProjectConfig | None) -> list[StageOutcome] | None:
        """Run every stage in order, pausing briefly between stages.

        The flow ends early when cancelled, or at the first failed stage if
        ``stop_on_failure`` is set.

        Returns:
            Outcomes of the stages that ran, or None when rejected.
        """
        token = self._try_enter()
        if token is None:
            self.events.log("Flow already running. Please wait.", Severity.WARNING)
            return None
        outcomes: list[StageOutcome] = []
        try:
            if project is None:
                self.events.log("No project loaded. Please create or open a project first.", Severity.ERROR)
                return None
            run_root = self._run_root(project)
            for index, stage in enumerate(STAGE_ORDER):
                if token.is_cancelled:
                    break
                if index:
                    await asyncio.sleep(self.settings.inter_stage_delay)
                    if token.is_cancelled:
                        break
                self.events.log(f"=== Starting {stage.value} stage ===", Severity.STAGE)
                outcome = await self._run_stage(stage, project, token, run_root)
                outcomes.append(outcome)
                if not outcome.success and not outcome.cancelled and self.settings.stop_on_failure:
                    self.events.log(
                        f"Flow stopped: {stage.display_name} failed.",
                        Severity.WARNING,
                    )
                    break

            if token.is_cancelled:
                self.events.log("Flow was cancelled.", Severity.INFO)
            elif all(outcome.success for outcome in outcomes) and len(outcomes) == len(STAGE_ORDER):
                self.events.log("=== Complete flow finished ===", Severity.SUCCESS)
            else:
                failed = [o.stage.display_name for o in outcomes if not o.success]
                self.events.log(f"Flow finished with failures: {', '.join(failed)}", Severity.ERROR)
            return outcomes
        finally:
            self._leave()

    async def run_analysis(self, analysis: Analysis | str, project: ProjectConfig | None) -> AnalysisOutcome | None:
        """Run a timing or power analysis with OpenSTA.

        Analyses read the synthesized netlist and share the single-flight
        guard with the stages.

        Returns:
            The analysis outcome, or None when the request was rejected.
        """
        token = self._try_enter()
        if token is None:
            self.events.log("Another stage is already running. Please wait.", Severity.WARNING)
            return None
        try:
            if project is None:
                self.events.log("No project loaded. Please create or open a project first.", Severity.ERROR)
                return None
            try:
                analysis = Analysis.parse(analysis) if not isinstance(analysis, Analysis) else analysis
            except ValueError as exc:
                self.events.log(str(exc), Severity.ERROR)
                return None
            return await self._run_analysis(analysis, project, token)
        finally:
            self._leave()

    def stop(self) -> None:
        """Cancel the running stage or flow; its process tree is killed."""
        token = self._token
        if token is not None:
            token.cancel()
        self.events.log("Stopping current operation...", Severity.WARNING)

    async def detect_tools(self, on_progress: Callable[[str], None] | None = None) -> ToolDetectionResult | None:
        """Run toolchain detection and log the found/total counts.

        Detection writes found locations into the live config; saving it is
        left to the caller.
        """
        detector = ToolchainDetector(self.config, self.bridge, runner=self.runner)
        try:
            result = await detector.detect(on_progress=on_progress)
        except Exception as exc:  # noqa: BLE001 - surface unexpected detection errors
            logger.exception("toolchain detection failed")
            self.events.log(f"Tool detection failed: {exc}", Severity.ERROR)
            return None
        severity = Severity.SUCCESS if result.found_count else Severity.WARNING
        self.events.log(
            f"Toolchain detection complete: {result.found_count}/{result.total_tools} tools found "
            f"({result.mode.value} mode)",
            severity,
        )
        return result

    def _run_root(self, project: ProjectConfig) -> Path:
        workspace = self.settings.workspace_root or default_workspace_root()
        return workspace / project.name / f"run_{self._clock().strftime(RUN_DIR_TIMESTAMP_FORMAT)}"

    async def _run_stage(
        self,
        stage: Stage,
        project: ProjectConfig,
        token: CancellationToken,
        run_root: Path,
    ) -> StageOutcome:
        name = stage.display_name
        self._current_stage = stage
        work_dir = stage_dir(project.root, stage)
        run_dir = run_root / stage.value
        metrics: list[StageMetric] = []
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            run_dir.mkdir(parents=True, exist_ok=True)
            self.events.log(f"Working directory: {work_dir}", Severity.INFO)
            self.events.log(f"Run directory: {run_dir}", Severity.INFO)
            self.events.log(f"PDK: {project.pdk}", Severity.INFO)

            result, lvs_output = await self._execute(stage, project, work_dir, token)

            if result.cancelled:
                self.events.log(f"{name} stopped.", Severity.INFO)
            elif result.success:
                metrics = stage_metrics(stage, project, result, lvs_output)
                if self.settings.archive_outputs:
                    self._archive(stage, work_dir, run_dir)
                self.events.log(f"{name} completed successfully!", Severity.SUCCESS)
                self.events.progress(name, 100)
                for metric in metrics:
                    self.events.stage_completed(name, metric.metric, metric.value, metric.status)
            else:
                self.events.log(f"{name} failed: {result.error_message}", Severity.ERROR)
        except Exception as exc:  # noqa: BLE001 - keep the pipeline usable after unexpected errors
            logger.exception("unexpected error during %s", stage.value)
            self.events.log(f"Error during {name}: {exc}", Severity.ERROR)
            result = ToolResult.failed(FailureKind.INTERNAL_ERROR, str(exc))
        return StageOutcome(
            stage=stage,
            result=result,
            stage_dir=work_dir,
            run_dir=run_dir,
            metrics=tuple(metrics),
        )

    async def _execute(
        self,
        stage: Stage,
        project: ProjectConfig,
        work_dir: Path,
        token: CancellationToken,
    ) -> tuple[ToolResult, str | None]:
        definition = STAGE_TABLE[stage]
        name = definition.display_name
        self.events.log(f"Starting {name}...", Severity.INFO)
        self.events.progress(name, _PROGRESS_STARTED)

        if stage is Stage.SYNTHESIS and not project.rtl_files:
            return ToolResult.failed(
                FailureKind.NOT_CONFIGURED,
                "No RTL files in project. Please add Verilog files first.",
            ), None
        upstream = upstream_artifact(project.root, stage)
        if definition.upstream is not None and upstream is not None and not upstream.is_file():
            return ToolResult.failed(
                FailureKind.ARTIFACT_MISSING,
                f"{upstream.name} not found. Please run {definition.upstream.display_name.lower()} first.",
            ), None

        launcher = ToolLauncher(self.config, runner=self.runner, bridge=self._launch_bridge())
        plan = launcher.resolve(definition.tool)
        if plan is None:
            return launcher.not_configured(definition.tool), None

        mount_root = project.root.resolve()
        generator = ScriptGenerator(
            pdk_root=self.config.pdk_root,
            path_mapper=launcher.path_mapper(plan, mount_root),
        )
        script_path = work_dir / definition.script_name
        script_path.write_text(generator.generate(stage, project, work_dir.resolve()), encoding="utf-8")
        self.events.log(f"Generated {definition.script_name}", Severity.INFO)
        self.events.progress(name, _PROGRESS_SCRIPT_READY)

        if token.is_cancelled:
            return ToolResult(success=False, failure=FailureKind.CANCELLED), None

        self.events.log(f"Running {plan.executable} ({plan.mode})...", Severity.INFO)
        result = await launcher.launch(
            definition.tool,
            generator.tool_args(stage, project),
            workdir=work_dir,
            mount_root=mount_root,
            token=token,
            on_stdout=self._tool_line,
            on_stderr=self._tool_line,
            timeout=self.settings.stage_timeout,
        )
        if not result.success or stage is not Stage.VERIFICATION:
            return result, None

        self._log_drc(result)
        self.events.progress(name, _PROGRESS_TOOL_DONE)
        lvs_output = await self._run_lvs(launcher, generator, project, work_dir, mount_root, token)
        if token.is_cancelled:
            return ToolResult(success=False, failure=FailureKind.CANCELLED), None
        return result, lvs_output

    async def _run_analysis(
        self,
        analysis: Analysis,
        project: ProjectConfig,
        token: CancellationToken,
    ) -> AnalysisOutcome:
        name = analysis.display_name
        work_dir = analysis_dir(project.root, analysis)
        metrics: list[StageMetric] = []
        try:
            work_dir.mkdir(parents=True, exist_ok=True)
            self.events.log(f"Starting {analysis.value} analysis...", Severity.INFO)
            self.events.progress(name, _PROGRESS_STARTED)
            result = await self._execute_analysis(analysis, project, work_dir, token)
            if result.cancelled:
                self.events.log(f"{name} stopped.", Severity.INFO)
            elif result.success:
                metrics = analysis_metrics(analysis, project, result)
                self.events.log(f"{name} complete.", Severity.SUCCESS)
                self.events.progress(name, 100)
                for metric in metrics:
                    self.events.stage_completed(name, metric.metric, metric.value, metric.status)
            else:
                self.events.log(f"{name} failed: {result.error_message}", Severity.ERROR)
        except Exception as exc:  # noqa: BLE001 - keep the pipeline usable after unexpected errors
            logger.exception("unexpected error during %s analysis", analysis.value)
            self.events.log(f"Error during {name}: {exc}", Severity.ERROR)
            result = ToolResult.failed(FailureKind.INTERNAL_ERROR, str(exc))
        return AnalysisOutcome(analysis=analysis, result=result, work_dir=work_dir, metrics=tuple(metrics))

    async def _execute_analysis(
        self,
        analysis: Analysis,
        project: ProjectConfig,
        work_dir: Path,
        token: CancellationToken,
    ) -> ToolResult:
        netlist = analysis_input(project.root)
        if not netlist.is_file():
            return ToolResult.failed(
                FailureKind.ARTIFACT_MISSING,
                f"{netlist.name} not found. Please run synthesis first.",
            )
        launcher = ToolLauncher(self.config, runner=self.runner, bridge=self._launch_bridge())
        plan = launcher.resolve(ANALYSIS_TOOL)
        if plan is None:
            return launcher.not_configured(ANALYSIS_TOOL)

        mount_root = project.root.resolve()
        generator = ScriptGenerator(
            pdk_root=self.config.pdk_root,
            path_mapper=launcher.path_mapper(plan, mount_root),
        )
        script_path = work_dir / analysis.script_name
        script_path.write_text(generator.generate_analysis(analysis, project, work_dir.resolve()), encoding="utf-8")
        self.events.log(f"Generated {analysis.script_name}", Severity.INFO)
        self.events.progress(analysis.display_name, _PROGRESS_SCRIPT_READY)
        if token.is_cancelled:
            return ToolResult(success=False, failure=FailureKind.CANCELLED)

        self.events.log(f"Running {plan.executable} ({plan.mode})...", Severity.INFO)
        return await launcher.launch(
            ANALYSIS_TOOL,
            generator.analysis_args(analysis),
            workdir=work_dir,
            mount_root=mount_root,
            token=token,
            on_stdout=self._tool_line,
            on_stderr=self._tool_line,
            timeout=self.settings.stage_timeout,
        )

    async def _run_lvs(
        self,
        launcher: ToolLauncher,
        generator: ScriptGenerator,
        project: ProjectConfig,
        work_dir: Path,
        mount_root: Path,
        token: CancellationToken,
    ) -> str | None:
        name = Stage.VERIFICATION.display_name
        if launcher.resolve("netgen") is None:
            self.events.log("LVS skipped: Netgen path not configured", Severity.WARNING)
            return None
        self.events.log("Running LVS check with Netgen...", Severity.INFO)
        self.events.progress(name, _PROGRESS_LVS)
        lvs = await launcher.launch(
            "netgen",
            generator.lvs_args(project),
            workdir=work_dir,
            mount_root=mount_root,
            token=token,
            on_stdout=self._tool_line,
            on_stderr=self._tool_line,
            timeout=self.settings.stage_timeout,
        )
        if not lvs.success:
            if not lvs.cancelled:
                self.events.log(f"LVS check failed: {lvs.error_message}", Severity.WARNING)
            return None
        report = work_dir / LVS_REPORT
        report_text = report.read_text(encoding="utf-8", errors="replace") if report.is_file() else ""
        return f"{lvs.stdout}\n{report_text}"

    def _log_drc(self, result: ToolResult) -> None:
        violations = parse_drc_count(f"{result.stdout}\n{result.stderr}")
        if violations is None:
            self.events.log("DRC violation count not reported", Severity.WARNING)
        elif violations:
            self.events.log(f"DRC found {violations} violations", Severity.WARNING)
        else:
            self.events.log("DRC check passed", Severity.SUCCESS)

    def _launch_bridge(self) -> BridgeEnvironment | None:
        """The bridge, when the config sends any tool into it."""
        if self.config.use_bridge or any(
            self.config.path_for(spec.name).strip().startswith(BRIDGE_PATH_PREFIX) for spec in TRACKED_TOOLS
        ):
            return self.bridge
        return None

    def _tool_line(self, line: str) -> None:
        if line.strip():
            self.events.log(line, Severity.INFO)

    def _archive(self, stage: Stage, work_dir: Path, run_dir: Path) -> None:
        definition = STAGE_TABLE[stage]
        copied = 0
        for filename in (definition.script_name, *definition.outputs):
            source = work_dir / filename
            if source.is_file():
                shutil.copy2(source, run_dir / filename)
                copied += 1
        if copied:
            self.events.log(f"Archived {copied} file(s) to {run_dir}", Severity.INFO)


def stage_names(stages: Sequence[Stage] = STAGE_ORDER) -> list[str]:
    return [stage.value for stage in stages]


__all__ = [
    "DEFAULT_INTER_STAGE_DELAY_SEC",
    "AnalysisOutcome",
    "PipelineSettings",
    "PipelineState",
    "StageOutcome",
    "StagePipeline",
    "default_workspace_root",
    "stage_names",
]
