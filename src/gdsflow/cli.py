"""gdsflow command-line interface.

Commands:
    detect: Probe for the EDA tools and print the operation mode.
    run: Run one stage for a project.
    flow: Run every stage in order for a project.
    analyze: Run a timing or power analysis on the synthesized netlist.
    script: Print the generated script for a stage.
    install: Install the EDA tools inside the WSL bridge.
    config show / config set: Inspect or change the toolchain config.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path

from pydantic import ValidationError

from . import __version__
from .bridge import get_bridge_environment
from .config import Toolchain, ToolchainConfig
from .events import EventHub, LogEvent, Severity, StageCompletedEvent
from .pipeline import AnalysisOutcome, PipelineSettings, StageOutcome, StagePipeline, stage_names
from .project import ProjectLoadError, ProjectManager
from .scripts import ScriptGenerator
from .stages import Analysis, Stage, stage_dir
from .toolchain.installer import ToolchainInstaller

logger = logging.getLogger(__name__)

_SEVERITY_PREFIX = {
    Severity.INFO: "",
    Severity.SUCCESS: "[ok] ",
    Severity.WARNING: "[warn] ",
    Severity.ERROR: "[error] ",
    Severity.STAGE: "",
}

_INSTALL_STEPS = {
    "docker": ToolchainInstaller.install_docker,
    "yosys": ToolchainInstaller.install_yosys_from_source,
    "openroad": ToolchainInstaller.install_openroad,
    "openroad-source": ToolchainInstaller.install_openroad_from_source,
    "all": ToolchainInstaller.complete_setup,
}

INSTALL_TARGETS = ["check", *_INSTALL_STEPS]


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser for the gdsflow CLI."""
    parser = argparse.ArgumentParser(
        prog="gdsflow",
        description="RTL-to-GDSII toolchain orchestration",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (can be repeated)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Toolchain config file (default: <config dir>/toolchain.json)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    detect = subparsers.add_parser("detect", help="Detect installed EDA tools")
    detect.add_argument("--save", action="store_true", help="Save detected tool paths to the config")
    detect.add_argument("--json", action="store_true", help="Emit the detection result as JSON")

    project_args = argparse.ArgumentParser(add_help=False)
    project_args.add_argument("-p", "--project", type=Path, required=True, help="Project file")

    run_flags = argparse.ArgumentParser(add_help=False)
    run_flags.add_argument("--workspace", type=Path, default=None, help="Root of timestamped run dirs")
    run_flags.add_argument("--timeout", type=float, default=None, help="Per-stage tool timeout (seconds)")
    run_flags.add_argument("--record", action="store_true", help="Append build records and save the project")

    run = subparsers.add_parser("run", help="Run one stage", parents=[project_args, run_flags])
    run.add_argument("stage", choices=stage_names())

    flow = subparsers.add_parser("flow", help="Run the complete flow", parents=[project_args, run_flags])
    flow.add_argument("--stop-on-failure", action="store_true", help="Stop at the first failed stage")

    analysis_flags = argparse.ArgumentParser(add_help=False)
    analysis_flags.add_argument("--timeout", type=float, default=None, help="Tool timeout (seconds)")
    analysis_flags.add_argument("--record", action="store_true", help="Append a build record and save the project")

    analyze = subparsers.add_parser(
        "analyze", help="Run a timing or power analysis", parents=[project_args, analysis_flags]
    )
    analyze.add_argument("analysis", choices=[analysis.value for analysis in Analysis])

    script = subparsers.add_parser("script", help="Print the generated script for a stage", parents=[project_args])
    script.add_argument("stage", choices=stage_names())
    script.add_argument("-o", "--out", type=Path, default=None, help="Write the script to a file")

    install = subparsers.add_parser("install", help="Install EDA tools inside the WSL bridge")
    install.add_argument("target", choices=INSTALL_TARGETS)
    install.add_argument("--timeout", type=float, default=None, help="Per-command timeout (seconds)")

    config = subparsers.add_parser("config", help="Toolchain configuration")
    config_sub = config.add_subparsers(dest="config_command", required=True)
    config_sub.add_parser("show", help="Print the toolchain config as JSON")
    config_set = config_sub.add_parser("set", help="Set one toolchain config field")
    config_set.add_argument("key", choices=sorted(ToolchainConfig.model_fields))
    config_set.add_argument("value")

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the gdsflow CLI.

    Args:
        argv: Command line arguments (defaults to sys.argv).

    Returns:
        Exit code (0 for success, non-zero for errors).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.WARNING
    if args.verbose >= 1:
        log_level = logging.INFO
    if args.verbose >= 2:
        log_level = logging.DEBUG
    logging.basicConfig(level=log_level, format="%(levelname)s: %(message)s")

    toolchain = Toolchain(args.config)
    try:
        if args.command == "detect":
            return _cmd_detect(args, toolchain)
        if args.command == "run":
            return _cmd_run(args, toolchain)
        if args.command == "flow":
            return _cmd_flow(args, toolchain)
        if args.command == "analyze":
            return _cmd_analyze(args, toolchain)
        if args.command == "script":
            return _cmd_script(args, toolchain)
        if args.command == "install":
            return _cmd_install(args)
        if args.command == "config":
            return _cmd_config(args, toolchain)
        parser.error(f"Unknown command: {args.command}")
        return 2
    except ProjectLoadError as exc:
        sys.stderr.write(f"{exc}\n")
        return 1
    except Exception as exc:  # noqa: BLE001 - report unexpected errors as exit code 1
        logger.error("Error: %s", exc)
        if args.verbose >= 2:
            import traceback

            traceback.print_exc()
        return 1


def _print_log(event: LogEvent) -> None:
    sys.stdout.write(f"{_SEVERITY_PREFIX[event.severity]}{event.message}\n")


def _make_pipeline(args: argparse.Namespace, toolchain: Toolchain, *, stop_on_failure: bool = False) -> StagePipeline:
    events = EventHub()
    events.subscribe_log(_print_log)
    settings = PipelineSettings(
        stop_on_failure=stop_on_failure,
        workspace_root=getattr(args, "workspace", None),
        stage_timeout=getattr(args, "timeout", None),
    )
    return StagePipeline(toolchain, events=events, settings=settings)


def _cmd_detect(args: argparse.Namespace, toolchain: Toolchain) -> int:
    pipeline = _make_pipeline(args, toolchain)
    result = asyncio.run(pipeline.detect_tools())
    if result is None:
        return 1
    if args.json:
        payload = {
            "mode": result.mode.value,
            "found_count": result.found_count,
            "total_tools": result.total_tools,
            "missing_tools": result.missing_tools,
            "flow_images": list(result.flow_images),
            "bridge_available": result.bridge_available,
            "docker_available": result.docker_available,
            "tools": {
                name: {
                    "available": info.available,
                    "version": info.version,
                    "install_type": info.install_type.value if info.install_type else None,
                    "location": info.location,
                }
                for name, info in result.tools.items()
            },
        }
        sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True) + "\n")
    else:
        sys.stdout.write(result.summary() + "\n")
    if args.save:
        saved = toolchain.save_config()
        sys.stdout.write(f"Config saved to: {saved}\n")
    return 0 if result.found_count else 2


def _collect_completions(pipeline: StagePipeline) -> list[StageCompletedEvent]:
    completed: list[StageCompletedEvent] = []
    pipeline.events.subscribe_stage_completed(completed.append)
    return completed


def _print_completions(completed: list[StageCompletedEvent]) -> None:
    for event in completed:
        sys.stdout.write(f"{event.stage:<13} {event.metric:<12} {event.value:<20} {event.status}\n")


def _record(manager: ProjectManager, outcomes: list[StageOutcome] | list[AnalysisOutcome]) -> None:
    for outcome in outcomes:
        name = outcome.stage.value if isinstance(outcome, StageOutcome) else outcome.analysis.value
        manager.record_build(
            name,
            success=outcome.success,
            metrics={metric.metric: metric.value for metric in outcome.metrics},
        )
    saved = manager.save_project()
    if saved is not None:
        sys.stdout.write(f"Project saved to: {saved}\n")


def _cmd_run(args: argparse.Namespace, toolchain: Toolchain) -> int:
    manager = ProjectManager()
    project = manager.load_project(args.project)
    pipeline = _make_pipeline(args, toolchain)
    completed = _collect_completions(pipeline)
    outcome = asyncio.run(pipeline.run_stage(Stage.parse(args.stage), project))
    _print_completions(completed)
    if outcome is None:
        return 1
    if args.record:
        _record(manager, [outcome])
    return 0 if outcome.success else 1


def _cmd_flow(args: argparse.Namespace, toolchain: Toolchain) -> int:
    manager = ProjectManager()
    project = manager.load_project(args.project)
    pipeline = _make_pipeline(args, toolchain, stop_on_failure=args.stop_on_failure)
    completed = _collect_completions(pipeline)
    outcomes = asyncio.run(pipeline.run_complete_flow(project))
    _print_completions(completed)
    if outcomes is None:
        return 1
    if args.record:
        _record(manager, outcomes)
    return 0 if outcomes and all(outcome.success for outcome in outcomes) else 1


def _cmd_analyze(args: argparse.Namespace, toolchain: Toolchain) -> int:
    manager = ProjectManager()
    project = manager.load_project(args.project)
    pipeline = _make_pipeline(args, toolchain)
    completed = _collect_completions(pipeline)
    outcome = asyncio.run(pipeline.run_analysis(args.analysis, project))
    _print_completions(completed)
    if outcome is None:
        return 1
    if args.record:
        _record(manager, [outcome])
    return 0 if outcome.success else 1


def _cmd_script(args: argparse.Namespace, toolchain: Toolchain) -> int:
    project = ProjectManager().load_project(args.project)
    stage = Stage.parse(args.stage)
    generator = ScriptGenerator(pdk_root=toolchain.config.pdk_root)
    text = generator.generate(stage, project, stage_dir(project.root, stage))
    if args.out:
        args.out.write_text(text, encoding="utf-8")
        sys.stdout.write(f"Script written to: {args.out}\n")
        return 0
    sys.stdout.write(text)
    return 0


def _cmd_install(args: argparse.Namespace) -> int:
    installer = ToolchainInstaller(
        get_bridge_environment(),
        on_progress=lambda message: sys.stdout.write(f"{message}\n"),
        step_timeout=args.timeout,
    )
    if args.target == "check":
        check = installer.check_bridge_installation()
        sys.stdout.write(f"{check.message}\n")
        if check.command:
            sys.stdout.write(f"Run as Administrator: {check.command}\n")
        return 0 if check.can_install or installer.bridge.available else 1
    step = _INSTALL_STEPS[args.target]
    return 0 if asyncio.run(step(installer)) else 1


def _cmd_config(args: argparse.Namespace, toolchain: Toolchain) -> int:
    if args.config_command == "show":
        sys.stdout.write(toolchain.config.model_dump_json(indent=2) + "\n")
        return 0
    try:
        setattr(toolchain.config, args.key, args.value)
    except ValidationError as exc:
        sys.stderr.write(f"Invalid value for {args.key}: {exc.errors()[0]['msg']}\n")
        return 1
    saved = toolchain.save_config()
    sys.stdout.write(f"{args.key} = {getattr(toolchain.config, args.key)!r} (saved to {saved})\n")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
