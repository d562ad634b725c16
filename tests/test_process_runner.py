"""Tests for ProcessRunner line streaming, failures and cancellation.

Real child processes are spawned with the running interpreter so the tests
do not depend on any EDA tool being installed.
"""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest

from gdsflow.process import (
    CancellationToken,
    FailureKind,
    IProcessRunner,
    OperationCancelledError,
    ProcessRunner,
    ToolResult,
)

PY = sys.executable


def _run(runner: ProcessRunner, *args: str, **kwargs: object) -> ToolResult:
    return asyncio.run(runner.run(PY, ["-c", *args], **kwargs))  # type: ignore[arg-type]


class TestToolResult:
    def test_failed_has_no_exit_code(self) -> None:
        result = ToolResult.failed(FailureKind.NOT_CONFIGURED, "Yosys path not configured")
        assert result.success is False
        assert result.exit_code is None
        assert result.error_message == "Yosys path not configured"

    def test_error_message_falls_back_to_exit_code(self) -> None:
        result = ToolResult(success=False, exit_code=2, failure=FailureKind.NON_ZERO_EXIT)
        assert result.error_message == "process exited with code 2"

    def test_success_has_empty_error_message(self) -> None:
        assert ToolResult(success=True, exit_code=0).error_message == ""

    def test_cancelled_flag(self) -> None:
        assert ToolResult(success=False, failure=FailureKind.CANCELLED).cancelled is True
        assert ToolResult(success=False, failure=FailureKind.TIMEOUT).timed_out is True


class TestCancellationToken:
    def test_cancel_sets_flag(self) -> None:
        token = CancellationToken()
        assert token.is_cancelled is False
        token.cancel()
        assert token.is_cancelled is True

    def test_raise_if_cancelled(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel()
        with pytest.raises(OperationCancelledError):
            token.raise_if_cancelled()


class TestProcessRunner:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(ProcessRunner(), IProcessRunner)

    def test_rejects_non_positive_poll_interval(self) -> None:
        with pytest.raises(ValueError):
            ProcessRunner(poll_interval=0)

    def test_success_streams_lines_in_order(self) -> None:
        seen: list[str] = []
        result = _run(
            ProcessRunner(),
            "print('one'); print('two'); print('three')",
            on_stdout=seen.append,
        )
        assert result.success is True
        assert result.exit_code == 0
        assert result.failure is None
        assert seen == ["one", "two", "three"]
        assert result.stdout == "one\ntwo\nthree\n"

    def test_stderr_is_streamed_separately(self) -> None:
        out: list[str] = []
        err: list[str] = []
        result = _run(
            ProcessRunner(),
            "import sys; print('to out'); print('to err', file=sys.stderr)",
            on_stdout=out.append,
            on_stderr=err.append,
        )
        assert out == ["to out"]
        assert err == ["to err"]
        assert "to err" in result.stderr

    def test_non_zero_exit_preserves_code(self) -> None:
        result = _run(ProcessRunner(), "import sys; sys.stderr.write('boom\\n'); sys.exit(3)")
        assert result.success is False
        assert result.exit_code == 3
        assert result.failure is FailureKind.NON_ZERO_EXIT
        assert result.error_message == "boom"

    def test_cwd_is_applied(self, tmp_path: Path) -> None:
        result = _run(ProcessRunner(), "import os; print(os.getcwd())", cwd=tmp_path)
        assert Path(result.stdout.strip()).resolve() == tmp_path.resolve()

    def test_spawn_failure_is_reported_not_raised(self, tmp_path: Path) -> None:
        missing = str(tmp_path / "no-such-tool")
        result = asyncio.run(ProcessRunner().run(missing, ["-V"]))
        assert result.success is False
        assert result.exit_code is None
        assert result.failure is FailureKind.SPAWN_FAILURE
        assert result.stderr.startswith("Tool execution failed:")

    def test_pre_cancelled_token_spawns_nothing(self) -> None:
        token = CancellationToken()
        token.cancel()
        result = _run(ProcessRunner(), "print('never')", token=token)
        assert result.cancelled is True
        assert result.exit_code is None
        assert result.stdout == ""

    def test_cancel_terminates_running_process(self) -> None:
        runner = ProcessRunner(poll_interval=0.02, kill_grace=0.5)
        token = CancellationToken()

        async def scenario() -> ToolResult:
            loop = asyncio.get_running_loop()
            loop.call_later(0.3, token.cancel)
            return await runner.run(PY, ["-c", "import time; print('started', flush=True); time.sleep(30)"], token=token)

        started = time.monotonic()
        result = asyncio.run(scenario())
        assert result.cancelled is True
        assert result.success is False
        assert time.monotonic() - started < 15

    def test_timeout_terminates_process(self) -> None:
        runner = ProcessRunner(poll_interval=0.02, kill_grace=0.5)
        started = time.monotonic()
        result = _run(runner, "import time; time.sleep(30)", timeout=0.3)
        assert result.timed_out is True
        assert result.success is False
        assert time.monotonic() - started < 15

    def test_invalid_utf8_is_replaced(self) -> None:
        result = _run(ProcessRunner(), "import sys; sys.stdout.buffer.write(b'bad \\xff byte\\n')")
        assert result.success is True
        assert "bad" in result.stdout
        assert "�" in result.stdout

    def test_line_longer_than_stream_limit(self) -> None:
        seen: list[str] = []
        result = _run(
            ProcessRunner(),
            "print('x' * 200000); print('tail')",
            on_stdout=seen.append,
        )
        assert result.success is True
        assert [len(line) for line in seen] == [200000, 4]
        assert result.stdout.splitlines()[1] == "tail"

    def test_output_without_trailing_newline(self) -> None:
        result = _run(ProcessRunner(), "import sys; sys.stdout.write('a\\r\\nb')")
        assert result.stdout == "a\nb\n"
