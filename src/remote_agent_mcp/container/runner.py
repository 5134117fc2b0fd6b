"""Async runner for the coding agent CLI inside an execution unit."""

from __future__ import annotations

import asyncio
import contextlib
import shutil
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping, TextIO

from .utils import sanitize_environment

TIMEOUT_EXIT_CODE = 124
STREAM_LINE_LIMIT = 1024 * 1024


class AgentRunnerError(RuntimeError):
    """Base class for agent runner errors."""


class AgentNotFoundError(AgentRunnerError):
    """Raised when the agent CLI executable cannot be located."""


@dataclass(slots=True)
class AgentExecutionResult:
    """Holds the outcome of one agent CLI invocation."""

    args: tuple[str, ...]
    returncode: int
    output: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class AgentRunner:
    """Execute ``opencode run`` with a hard wall-clock timeout.

    Combined stdout/stderr is echoed line by line to ``stream`` (the unit's
    stdout, picked up by the log driver) and buffered for upload.
    """

    def __init__(self, executable: Path | None = None, *, stream: TextIO | None = None) -> None:
        self._executable_path = self._resolve_executable(executable)
        self._stream = stream

    @staticmethod
    def _resolve_executable(explicit: Path | None) -> Path:
        if explicit is not None:
            candidate = Path(explicit)
            if candidate.exists() and candidate.is_file():
                return candidate
            raise AgentNotFoundError(f"Agent executable not found at {candidate}")

        binary = shutil.which("opencode")
        if binary is None:
            raise AgentNotFoundError("opencode CLI executable not found on PATH")
        return Path(binary)

    @property
    def executable(self) -> Path:
        return self._executable_path

    async def run(
        self,
        prompt: str,
        *,
        model: str,
        cwd: Path,
        timeout: float,
        env: Mapping[str, str] | None = None,
    ) -> AgentExecutionResult:
        return await self._invoke(["run", "-m", model, prompt], cwd=cwd, timeout=timeout, env=env)

    def _echo(self, line: str) -> None:
        stream = self._stream or sys.stdout
        stream.write(line)
        stream.flush()

    async def _invoke(
        self,
        args: list[str],
        *,
        cwd: Path,
        timeout: float,
        env: Mapping[str, str] | None,
    ) -> AgentExecutionResult:
        cmd = [str(self._executable_path), *args]
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=str(cwd),
            env=sanitize_environment(env),
            limit=STREAM_LINE_LIMIT,
        )
        chunks: list[str] = []

        async def _pump() -> int:
            assert process.stdout is not None
            async for raw in process.stdout:
                line = raw.decode("utf-8", errors="replace")
                chunks.append(line)
                self._echo(line)
            return await process.wait()

        try:
            returncode = await asyncio.wait_for(_pump(), timeout)
        except asyncio.TimeoutError:
            with contextlib.suppress(ProcessLookupError):
                process.kill()
            await process.wait()
            return AgentExecutionResult(
                args=tuple(cmd), returncode=TIMEOUT_EXIT_CODE, output="".join(chunks), timed_out=True
            )
        return AgentExecutionResult(args=tuple(cmd), returncode=returncode, output="".join(chunks))


class FakeAgentRunner(AgentRunner):
    """Test double that simulates agent CLI runs."""

    def __init__(  # type: ignore[override]
        self,
        responses: Iterable[AgentExecutionResult] | None = None,
        *,
        on_run: Callable[[Path], None] | None = None,
    ) -> None:
        self._responses = list(responses or [])
        self._invocations: list[dict[str, object]] = []
        self._on_run = on_run
        self._executable_path = Path("/tmp/fake-opencode")
        self._stream = None

    async def _invoke(self, args, *, cwd, timeout, env):  # type: ignore[override]
        self._invocations.append({"args": tuple(args), "cwd": cwd, "timeout": timeout, "env": dict(env or {})})
        if self._on_run is not None:
            self._on_run(Path(cwd))
        if self._responses:
            return self._responses.pop(0)
        return AgentExecutionResult(args=tuple(args), returncode=0, output="")

    @property
    def invocations(self) -> list[dict[str, object]]:
        return self._invocations


__all__ = [
    "AgentExecutionResult",
    "AgentNotFoundError",
    "AgentRunner",
    "AgentRunnerError",
    "FakeAgentRunner",
    "TIMEOUT_EXIT_CODE",
]
