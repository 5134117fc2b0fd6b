from __future__ import annotations

import asyncio
import io
import os
import stat
import sys
from pathlib import Path

import pytest

from remote_agent_mcp.container import (
    AgentExecutionResult,
    AgentNotFoundError,
    AgentRunner,
    FakeAgentRunner,
    TIMEOUT_EXIT_CODE,
)

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="shell scripts stand in for the agent CLI")


def _script(tmp_path: Path, body: str) -> Path:
    path = tmp_path / "opencode"
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return path


def test_runner_streams_and_captures_output(tmp_path: Path) -> None:
    executable = _script(tmp_path, 'echo "=== Agent ==="\necho "args: $*"\necho "key=$FAKE_KEY" >&2\n')
    stream = io.StringIO()
    runner = AgentRunner(executable, stream=stream)

    result = asyncio.run(
        runner.run("fix it", model="anthropic/claude", cwd=tmp_path, timeout=10, env={"FAKE_KEY": "secret"})
    )

    assert result.ok
    assert result.args[1:] == ("run", "-m", "anthropic/claude", "fix it")
    assert "=== Agent ===" in result.output
    assert "args: run -m anthropic/claude fix it" in result.output
    assert "key=secret" in result.output
    assert stream.getvalue() == result.output


def test_runner_reports_exit_code(tmp_path: Path) -> None:
    runner = AgentRunner(_script(tmp_path, "exit 3\n"), stream=io.StringIO())

    result = asyncio.run(runner.run("p", model="m", cwd=tmp_path, timeout=10))

    assert result.returncode == 3
    assert not result.timed_out


def test_runner_kills_agent_on_timeout(tmp_path: Path) -> None:
    runner = AgentRunner(_script(tmp_path, "echo started\nexec sleep 30\n"), stream=io.StringIO())

    result = asyncio.run(runner.run("p", model="m", cwd=tmp_path, timeout=0.5))

    assert result.timed_out
    assert result.returncode == TIMEOUT_EXIT_CODE
    assert "started" in result.output


def test_runner_strips_python_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("PYTHONPATH", "/should/not/leak")
    runner = AgentRunner(_script(tmp_path, 'echo "pythonpath=[$PYTHONPATH]"\n'), stream=io.StringIO())

    result = asyncio.run(runner.run("p", model="m", cwd=tmp_path, timeout=10))

    assert "pythonpath=[]" in result.output


def test_explicit_missing_executable(tmp_path: Path) -> None:
    with pytest.raises(AgentNotFoundError):
        AgentRunner(tmp_path / "missing")


def test_missing_executable_on_path(monkeypatch) -> None:
    monkeypatch.setenv("PATH", os.devnull)
    with pytest.raises(AgentNotFoundError):
        AgentRunner()


def test_fake_runner_records_invocations(tmp_path: Path) -> None:
    touched: list[Path] = []
    runner = FakeAgentRunner(
        [AgentExecutionResult(args=("run",), returncode=2, output="boom")],
        on_run=touched.append,
    )

    first = asyncio.run(runner.run("p", model="m", cwd=tmp_path, timeout=5, env={"A": "1"}))
    second = asyncio.run(runner.run("q", model="m", cwd=tmp_path, timeout=5))

    assert (first.returncode, first.output) == (2, "boom")
    assert second.returncode == 0
    assert touched == [tmp_path, tmp_path]
    assert runner.invocations[0]["args"] == ("run", "-m", "m", "p")
    assert runner.invocations[0]["env"] == {"A": "1"}
