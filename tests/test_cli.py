"""Tests for the gdsflow command-line interface."""

from __future__ import annotations

import functools
import json
from pathlib import Path

import pytest
from conftest import RecordingRunner, available_bridge, ok, spawn_failure

from gdsflow import __version__
from gdsflow.bridge import BridgeEnvironment
from gdsflow.cli import build_parser, main
from gdsflow.config import ProjectConfig, load_toolchain_config
from gdsflow.pipeline import StagePipeline
from gdsflow.stages import analysis_input


@pytest.fixture
def config_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "toolchain.json"


@pytest.fixture
def project_file(project: ProjectConfig) -> Path:
    path = project.root / "counter.gdsproj.json"
    path.write_text(project.model_dump_json(indent=2), encoding="utf-8")
    return path


@pytest.fixture
def fake_pipeline(
    monkeypatch: pytest.MonkeyPatch, recording_runner: RecordingRunner, no_bridge: BridgeEnvironment
) -> RecordingRunner:
    monkeypatch.setattr(
        "gdsflow.cli.StagePipeline",
        functools.partial(StagePipeline, runner=recording_runner, bridge=no_bridge),
    )
    return recording_runner


class TestParser:
    def test_run_command(self) -> None:
        args = build_parser().parse_args(["run", "floorplan", "-p", "x.gdsproj.json", "--timeout", "60"])
        assert args.command == "run"
        assert args.stage == "floorplan"
        assert args.project == Path("x.gdsproj.json")
        assert args.timeout == 60.0
        assert args.record is False

    def test_flow_command(self) -> None:
        args = build_parser().parse_args(["-vv", "flow", "-p", "x.json", "--stop-on-failure"])
        assert args.verbose == 2
        assert args.stop_on_failure is True

    def test_rejects_unknown_stage(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["run", "signoff", "-p", "x.json"])

    def test_config_set_rejects_unknown_key(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["config", "set", "vivado_path", "/opt"])

    def test_version(self, capsys: pytest.CaptureFixture[str]) -> None:
        with pytest.raises(SystemExit) as exc_info:
            build_parser().parse_args(["--version"])
        assert exc_info.value.code == 0
        assert __version__ in capsys.readouterr().out

    def test_analyze_command(self) -> None:
        args = build_parser().parse_args(["analyze", "power", "-p", "x.json", "--record"])
        assert args.analysis == "power"
        assert args.record is True

    def test_rejects_unknown_install_target(self) -> None:
        with pytest.raises(SystemExit):
            build_parser().parse_args(["install", "vivado"])


class TestConfigCommands:
    def test_set_and_show(self, config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["--config", str(config_path), "config", "set", "yosys_path", "/opt/yosys/bin/yosys"]) == 0
        assert main(["--config", str(config_path), "config", "set", "use_bridge", "true"]) == 0
        config = load_toolchain_config(config_path)
        assert config.yosys_path == "/opt/yosys/bin/yosys"
        assert config.use_bridge is True

        capsys.readouterr()
        assert main(["--config", str(config_path), "config", "show"]) == 0
        shown = json.loads(capsys.readouterr().out)
        assert shown["yosys_path"] == "/opt/yosys/bin/yosys"

    def test_invalid_value(self, config_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["--config", str(config_path), "config", "set", "use_docker", "perhaps"]) == 1
        assert "Invalid value for use_docker" in capsys.readouterr().err
        assert not config_path.exists()


class TestScriptCommand:
    def test_prints_script(self, config_path: Path, project_file: Path, capsys: pytest.CaptureFixture[str]) -> None:
        assert main(["--config", str(config_path), "script", "synthesis", "-p", str(project_file)]) == 0
        out = capsys.readouterr().out
        assert out.startswith("# Yosys script generated by gdsflow")
        assert "hierarchy -check -top counter" in out

    def test_writes_script(self, config_path: Path, project_file: Path, tmp_path: Path) -> None:
        out_file = tmp_path / "routing.tcl"
        args = ["--config", str(config_path), "script", "routing", "-p", str(project_file), "-o", str(out_file)]
        assert main(args) == 0
        assert "global_route" in out_file.read_text(encoding="utf-8")

    def test_missing_project(self, config_path: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        missing = tmp_path / "absent.gdsproj.json"
        assert main(["--config", str(config_path), "script", "synthesis", "-p", str(missing)]) == 1
        assert "failed to load project" in capsys.readouterr().err


class TestRunCommands:
    def test_run_without_tools_fails_cleanly(
        self, config_path: Path, project_file: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        args = ["--config", str(config_path), "run", "floorplan", "-p", str(project_file)]
        assert main([*args, "--workspace", str(tmp_path / "runs")]) == 1
        assert "[error] Floorplan failed: netlist.v not found. Please run synthesis first." in capsys.readouterr().out

    def test_run_records_build(
        self,
        config_path: Path,
        project_file: Path,
        tmp_path: Path,
        fake_pipeline: RecordingRunner,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        main(["--config", str(config_path), "config", "set", "yosys_path", "yosys"])
        capsys.readouterr()

        args = ["--config", str(config_path), "run", "synthesis", "-p", str(project_file)]
        assert main([*args, "--workspace", str(tmp_path / "runs"), "--record"]) == 0

        out = capsys.readouterr().out
        assert "[ok] Synthesis completed successfully!" in out
        assert "Cells" in out
        assert fake_pipeline.executables == ["yosys"]
        saved = json.loads(project_file.read_text(encoding="utf-8"))
        assert saved["build_history"][-1]["stage"] == "synthesis"
        assert saved["build_history"][-1]["metrics"]["Cells"] == "42"

    def test_flow(
        self,
        config_path: Path,
        project_file: Path,
        tmp_path: Path,
        fake_pipeline: RecordingRunner,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        for tool in ("yosys", "openroad", "magic", "netgen"):
            main(["--config", str(config_path), "config", "set", f"{tool}_path", tool])
        capsys.readouterr()

        args = ["--config", str(config_path), "flow", "-p", str(project_file), "--workspace", str(tmp_path / "runs")]
        assert main(args) == 0
        assert "[ok] === Complete flow finished ===" in capsys.readouterr().out


class TestDetectCommand:
    def test_nothing_detected(
        self,
        config_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        no_bridge: BridgeEnvironment,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setattr("gdsflow.toolchain.detector._host_executable", lambda path: False)
        monkeypatch.setattr(
            "gdsflow.cli.StagePipeline",
            functools.partial(StagePipeline, runner=RecordingRunner(handler=spawn_failure), bridge=no_bridge),
        )
        assert main(["--config", str(config_path), "detect", "--json"]) == 2
        out = capsys.readouterr().out
        payload = json.loads(out[out.index("{") :])
        assert payload["mode"] == "unavailable"
        assert payload["found_count"] == 0
        assert payload["total_tools"] == 6


class TestAnalyzeCommand:
    def test_timing_records_build(
        self,
        config_path: Path,
        project: ProjectConfig,
        project_file: Path,
        fake_pipeline: RecordingRunner,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        main(["--config", str(config_path), "config", "set", "sta_path", "sta"])
        netlist = analysis_input(project.root)
        netlist.parent.mkdir(parents=True, exist_ok=True)
        netlist.write_text("module counter(); endmodule\n", encoding="utf-8")
        capsys.readouterr()

        assert main(["--config", str(config_path), "analyze", "timing", "-p", str(project_file), "--record"]) == 0

        out = capsys.readouterr().out
        assert "[ok] Timing Analysis complete." in out
        assert fake_pipeline.executables == ["sta"]
        saved = json.loads(project_file.read_text(encoding="utf-8"))
        assert saved["build_history"][-1]["stage"] == "timing"
        assert "WNS" in saved["build_history"][-1]["metrics"]

    def test_without_netlist(
        self, config_path: Path, project_file: Path, fake_pipeline: RecordingRunner, capsys: pytest.CaptureFixture[str]
    ) -> None:
        assert main(["--config", str(config_path), "analyze", "power", "-p", str(project_file)]) == 1
        out = capsys.readouterr().out
        assert "[error] Power Analysis failed: netlist.v not found. Please run synthesis first." in out
        assert fake_pipeline.invocations == []


class TestInstallCommand:
    def test_docker(
        self, config_path: Path, monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
    ) -> None:
        bridge, runner = available_bridge(lambda invocation: ok("dev\n"))
        monkeypatch.setattr("gdsflow.cli.get_bridge_environment", lambda: bridge)
        assert main(["--config", str(config_path), "install", "docker"]) == 0
        assert "✓ Docker installed successfully!" in capsys.readouterr().out
        assert runner.invocations[-1].args[-1] == "sudo -n usermod -aG docker dev"

    def test_failed_step(self, config_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        bridge, _ = available_bridge(lambda invocation: ok("", exit_code=1))
        monkeypatch.setattr("gdsflow.cli.get_bridge_environment", lambda: bridge)
        assert main(["--config", str(config_path), "install", "openroad"]) == 1

    def test_check_on_non_windows_host(
        self,
        config_path: Path,
        no_bridge: BridgeEnvironment,
        monkeypatch: pytest.MonkeyPatch,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        monkeypatch.setattr("gdsflow.cli.get_bridge_environment", lambda: no_bridge)
        monkeypatch.setattr("gdsflow.toolchain.installer._IS_WINDOWS", False)
        assert main(["--config", str(config_path), "install", "check"]) == 1
        assert "WSL is only available on Windows hosts" in capsys.readouterr().out
