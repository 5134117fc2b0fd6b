"""Execution unit: run one agent task and publish its results to the store.

The unit acquires a workspace, snapshots a baseline commit, runs the agent
under a timeout and then, exactly once and whatever happened before, uploads
the diff against the baseline, the final metadata and the captured output.
Progress lines go to stdout so the controller can pick milestones out of the
unit's log stream.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
import tarfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..storage import ArtifactKeys, MalformedTaskRecordError, TaskRecord, TaskStore
from .runner import TIMEOUT_EXIT_CODE, AgentRunner
from .settings import ExecutionUnitSettings
from .utils import GitCommandError, run_git

logger = logging.getLogger(__name__)

METADATA_PROMPT_LIMIT = 1000
SIGTERM_EXIT_CODE = 143


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def final_status(exit_code: int, timeout_seconds: int) -> tuple[str, str | None]:
    """Map the agent's exit code to the terminal status and error text."""

    if exit_code == 0:
        return "completed", None
    if exit_code == TIMEOUT_EXIT_CODE:
        return "failed", f"Task timed out after {timeout_seconds} seconds"
    return "failed", f"Task exited with code {exit_code}"


class ExecutionUnit:
    """One pass of the remote side of a task."""

    def __init__(
        self,
        settings: ExecutionUnitSettings,
        store: TaskStore,
        runner: AgentRunner | None = None,
        *,
        clock: Callable[[], datetime] = _utcnow,
        data_home: Path | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._runner = runner
        self._clock = clock
        self._data_home = data_home
        self._keys = ArtifactKeys(settings.task_id)
        self._work_dir = settings.work_root
        self._baseline: str | None = None
        self._agent_env: dict[str, str] = {}
        self._prompt = settings.task_prompt
        self._output: str | None = None
        self._cleaned_up = False

    @property
    def work_dir(self) -> Path:
        return self._work_dir

    @property
    def baseline(self) -> str | None:
        return self._baseline

    @property
    def agent_environment(self) -> dict[str, str]:
        return dict(self._agent_env)

    def run(self) -> int:
        """Run the task and return the agent's exit code."""

        settings = self._settings
        started_at = self._clock().isoformat()
        logger.info("=== Remote Agent Starting ===")
        logger.info("Task ID: %s", settings.task_id)
        logger.info("Timeout: %ss", settings.timeout_seconds)

        exit_code = 1
        try:
            self._prepare_workspace()
            self._load_credentials()
            self._load_prompt()
            exit_code = self._run_agent()
        except SystemExit as exc:
            exit_code = exc.code if isinstance(exc.code, int) else 1
            raise
        except Exception as exc:
            logger.error("Error: %s", exc)
            exit_code = 1
        finally:
            self._cleanup(started_at, exit_code)
        return exit_code

    # -- workspace -----------------------------------------------------

    def _prepare_workspace(self) -> None:
        settings = self._settings
        root = settings.work_root
        root.mkdir(parents=True, exist_ok=True)

        archive = self._store.get_artifact(settings.workspace_key) if settings.workspace_key else None
        if settings.workspace_key and archive is None:
            logger.warning("Warning: workspace archive %s not found", settings.workspace_key)

        if archive is not None:
            logger.info("=== Extracting workspace ===")
            self._work_dir = root / "repo"
            self._work_dir.mkdir(parents=True, exist_ok=True)
            archive_path = root / "workspace.tar.gz"
            archive_path.write_bytes(archive)
            try:
                with tarfile.open(archive_path, "r:gz") as bundle:
                    # Virtualenvs carry absolute interpreter symlinks; keep them.
                    bundle.extractall(self._work_dir, filter="tar")
            finally:
                archive_path.unlink(missing_ok=True)
            file_count = sum(
                1 for path in self._work_dir.rglob("*") if path.is_file() and ".git" not in path.parts
            )
            logger.info("Workspace extracted: %s files", file_count)
            if not (self._work_dir / ".git").exists():
                run_git("init", cwd=self._work_dir)
            run_git("add", "-A", cwd=self._work_dir)
            run_git(
                "commit", "--allow-empty", "-q", "-m", "Workspace baseline (pre-remote-agent)",
                cwd=self._work_dir,
            )
        elif settings.repo_url:
            logger.info("=== Cloning repository: %s ===", settings.repo_url)
            self._work_dir = root / "repo"
            run_git("clone", settings.repo_url, str(self._work_dir), cwd=root)
            if settings.branch:
                logger.info("Checking out branch: %s", settings.branch)
                run_git("checkout", settings.branch, cwd=self._work_dir)
        else:
            logger.info("=== No workspace provided, initializing empty repo for change tracking ===")
            self._work_dir = root
            run_git("init", cwd=root)
            run_git(
                "commit", "--allow-empty", "-q", "-m", "Empty baseline (no workspace)", cwd=root
            )

        self._baseline = run_git("rev-parse", "HEAD", cwd=self._work_dir).strip()
        logger.info("Baseline commit: %s", self._baseline)

    # -- credentials and prompt ----------------------------------------

    def _auth_file(self) -> Path:
        data_home = self._data_home or Path(
            os.environ.get("XDG_DATA_HOME") or Path.home() / ".local" / "share"
        )
        return data_home / "opencode" / "auth.json"

    def _load_credentials(self) -> None:
        key = self._settings.auth_key
        if not key:
            logger.info("No AUTH_KEY set, using auth from env vars")
            return

        logger.info("=== Downloading auth from store ===")
        try:
            payload = self._store.get_text(key)
            if payload is None:
                logger.warning("Warning: Failed to download auth from store")
                return
            if self._settings.auth_format == "opencode-auth":
                path = self._auth_file()
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_text(payload, encoding="utf-8")
                logger.info("Auth written to %s (OpenCode native format)", path)
            else:
                values = json.loads(payload)
                if not isinstance(values, dict):
                    raise ValueError("env-vars credentials must be a JSON object")
                self._agent_env.update({str(name): str(value) for name, value in values.items()})
                logger.info("Auth loaded as env vars (%s)", ", ".join(sorted(values)))
        finally:
            self._delete_credentials(key)

    def _delete_credentials(self, key: str) -> None:
        try:
            self._store.delete_artifact(key)
        except (ClientError, BotoCoreError) as exc:
            logger.warning("Warning: could not delete auth from store: %s", exc)
        else:
            logger.info("Auth deleted from store")

    def _load_prompt(self) -> None:
        key = self._settings.prompt_key
        if key:
            text = self._store.get_text(key)
            if text:
                self._prompt = text
                logger.info("Prompt loaded from store: %s bytes", len(text.encode("utf-8")))
            else:
                logger.warning("Warning: Failed to download prompt from store, using fallback TASK_PROMPT")
        if not self._prompt.strip():
            raise ValueError("No prompt provided")

    # -- agent ---------------------------------------------------------

    def _run_agent(self) -> int:
        settings = self._settings
        runner = self._runner or AgentRunner(settings.agent_executable)
        logger.info("Using model: %s", settings.agent_model)
        logger.info("=== Running OpenCode ===")
        logger.info("Working directory: %s", self._work_dir)
        logger.info("Prompt length: %s chars", len(self._prompt))

        result = asyncio.run(
            runner.run(
                self._prompt,
                model=settings.agent_model,
                cwd=self._work_dir,
                timeout=settings.timeout_seconds,
                env=self._agent_env,
            )
        )
        self._output = result.output
        logger.info("=== OpenCode Finished ===")
        return result.returncode

    # -- cleanup -------------------------------------------------------

    def _cleanup(self, started_at: str, exit_code: int) -> None:
        if self._cleaned_up:
            return
        self._cleaned_up = True
        logger.info("=== Cleanup (exit code: %s) ===", exit_code)
        self._upload_patch()
        self._write_final_metadata(started_at, exit_code)
        self._upload_output()
        logger.info("=== Remote Agent Finished ===")

    def _upload_patch(self) -> None:
        if self._baseline is None:
            logger.info("No baseline commit, skipping patch generation.")
            return

        logger.info("=== Generating change patch ===")
        try:
            run_git("add", "-A", cwd=self._work_dir)
            patch = run_git("diff", "--cached", self._baseline, cwd=self._work_dir)
            if not patch.strip():
                logger.info("No file changes detected.")
                return
            logger.info("Changes detected: %s bytes", len(patch.encode("utf-8")))
            self._store.put_artifact(self._keys.patch, patch, "text/plain")
        except (GitCommandError, ClientError, BotoCoreError, OSError) as exc:
            logger.error("Error: patch upload failed: %s", exc)

    def _write_final_metadata(self, started_at: str, exit_code: int) -> None:
        settings = self._settings
        try:
            current = self._store.get_metadata(settings.task_id)
        except (MalformedTaskRecordError, ClientError, BotoCoreError) as exc:
            logger.warning("Warning: could not read task metadata: %s", exc)
            current = None

        if current is not None and current.is_terminal:
            logger.info("Task already %s, leaving final status unchanged", current.status)
            return

        status, error = final_status(exit_code, settings.timeout_seconds)
        base = current or TaskRecord(
            task_id=settings.task_id,
            status="running",
            prompt=self._prompt[:METADATA_PROMPT_LIMIT],
            started_at=started_at,
        )
        record = base.finish(
            status,
            completed_at=self._clock().isoformat(),
            exit_code=exit_code,
            error=error,
        )
        try:
            self._store.put_metadata(settings.task_id, record)
        except (ClientError, BotoCoreError) as exc:
            logger.error("Error: metadata upload failed: %s", exc)

    def _upload_output(self) -> None:
        if self._output is None:
            return
        try:
            self._store.put_artifact(self._keys.output, self._output, "text/plain")
        except (ClientError, BotoCoreError) as exc:
            logger.error("Error: output upload failed: %s", exc)


def _raise_on_sigterm(signum, frame) -> None:  # pragma: no cover - signal path
    raise SystemExit(SIGTERM_EXIT_CODE)


def main() -> int:
    logging.basicConfig(level=logging.INFO, format="%(message)s", stream=sys.stdout)
    signal.signal(signal.SIGTERM, _raise_on_sigterm)

    settings = ExecutionUnitSettings()
    store = TaskStore(
        settings.bucket,
        client_factory=lambda: boto3.session.Session(region_name=settings.region).client("s3"),
    )
    try:
        return ExecutionUnit(settings, store).run()
    except SystemExit as exc:
        return exc.code if isinstance(exc.code, int) else 1


__all__ = ["ExecutionUnit", "final_status", "main"]
