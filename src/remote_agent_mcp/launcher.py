"""Launch and cancel remote agent tasks."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Iterator, Protocol
from uuid import uuid4

from botocore.exceptions import BotoCoreError, ClientError

from .auth import AuthError, ContainerAuth, resolve_container_auth
from .compute import ComputeError, UnitHandle, UnitParameters
from .config import CPU_CHOICES, MEMORY_CHOICES, RemoteAgentSettings
from .session_context import ContextProvider, build_remote_prompt
from .storage import ArtifactKeys, TaskNotFoundError, TaskRecord, TaskStore
from .workspace import WorkspaceError, format_size, package_workspace

logger = logging.getLogger(__name__)

METADATA_PROMPT_LIMIT = 1000


class LaunchError(RuntimeError):
    """Raised when a launch step fails; ``step`` names the failing stage."""

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        super().__init__(f"{step}: {message}")


class ComputeBackend(Protocol):
    def start_unit(self, params: UnitParameters, *, description: str = "") -> UnitHandle:
        ...

    def stop_unit(self, unit_id: str, *, reason: str = ...) -> bool:
        ...


@dataclass(slots=True)
class LaunchRequest:
    prompt: str
    cpu: str | None = None
    memory: str | None = None
    timeout_seconds: int | None = None
    repo_url: str | None = None
    branch: str | None = None
    workspace_dir: Path | None = None
    include_context: bool = True
    session_id: str | None = None
    # Caller-supplied transcript; takes precedence over the context provider.
    session_context: str | None = None


@dataclass(slots=True)
class LaunchResult:
    task_id: str
    unit_id: str
    status: str
    notes: list[str] = field(default_factory=list)


@dataclass(slots=True)
class CancelResult:
    task_id: str
    cancelled: bool
    message: str
    unit_stopped: bool = False


@contextmanager
def _step(name: str) -> Iterator[None]:
    try:
        yield
    except (ClientError, BotoCoreError, ComputeError, OSError) as exc:
        raise LaunchError(name, str(exc)) from exc


class TaskLauncher:
    """Turn a prompt into a running remote task.

    Every input is validated before the first upload so an invalid request
    never leaves a partial task behind. Steps that already ran are not rolled
    back when a later one fails.
    """

    def __init__(
        self,
        settings: RemoteAgentSettings,
        store: TaskStore,
        compute: ComputeBackend,
        *,
        auth_resolver: Callable[[RemoteAgentSettings], ContainerAuth] = resolve_container_auth,
        context_provider: ContextProvider | None = None,
        id_factory: Callable[[], str] = lambda: str(uuid4()),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self._settings = settings
        self._store = store
        self._compute = compute
        self._auth_resolver = auth_resolver
        self._context_provider = context_provider
        self._id_factory = id_factory
        self._clock = clock

    def _validate(self, request: LaunchRequest) -> None:
        if not request.prompt or not request.prompt.strip():
            raise LaunchError("input", "prompt must not be empty")
        if request.repo_url and request.workspace_dir is not None:
            raise LaunchError("input", "repo_url and a local workspace are mutually exclusive")
        if request.cpu is not None and request.cpu not in CPU_CHOICES:
            raise LaunchError("input", f"cpu must be one of {', '.join(CPU_CHOICES)}")
        if request.memory is not None and request.memory not in MEMORY_CHOICES:
            raise LaunchError("input", f"memory must be one of {', '.join(MEMORY_CHOICES)}")
        if request.timeout_seconds is not None and request.timeout_seconds <= 0:
            raise LaunchError("input", "timeout must be > 0")

        missing = self._settings.missing_infrastructure()
        if missing:
            raise LaunchError(
                "configuration",
                "Remote agent infrastructure is not configured (missing: "
                f"{', '.join(missing)}). Deploy the stack or set the REMOTE_AGENT_* variables.",
            )

    def _compose_prompt(self, request: LaunchRequest, task_id: str, notes: list[str]) -> str:
        """Best-effort enrichment; any failure falls back to the raw prompt."""

        if not request.include_context:
            return request.prompt

        session_context = request.session_context
        if session_context is None and self._context_provider is not None:
            try:
                session_context = self._context_provider(request.session_id)
            except Exception as exc:
                logger.warning(
                    "Session context extraction failed",
                    extra={"task_id": task_id, "error": str(exc)},
                )
                notes.append("Session context skipped (extraction failed, using raw prompt)")
                return request.prompt

        if not session_context:
            return request.prompt
        notes.append("Session context included")
        return build_remote_prompt(session_context, request.prompt)

    def launch(self, request: LaunchRequest) -> LaunchResult:
        self._validate(request)
        settings = self._settings
        notes: list[str] = []

        try:
            auth = self._auth_resolver(settings)
        except AuthError as exc:
            raise LaunchError("credentials", str(exc)) from exc

        archive: Path | None = None
        if request.workspace_dir is not None:
            try:
                archive = package_workspace(
                    request.workspace_dir, max_bytes=settings.max_workspace_bytes
                )
            except WorkspaceError as exc:
                raise LaunchError("workspace", str(exc)) from exc

        task_id = self._id_factory()
        keys = ArtifactKeys(task_id)

        workspace_key: str | None = None
        if archive is not None:
            try:
                with _step("workspace upload"):
                    size = archive.stat().st_size
                    self._store.put_artifact(keys.workspace, archive.read_bytes(), "application/gzip")
            finally:
                archive.unlink(missing_ok=True)
            workspace_key = keys.workspace
            notes.append(f"Workspace uploaded: {format_size(size)}")

        final_prompt = self._compose_prompt(request, task_id, notes)

        with _step("prompt upload"):
            self._store.put_artifact(keys.prompt, final_prompt, "text/plain")
        with _step("credentials upload"):
            self._store.put_artifact(keys.auth, auth.payload, "application/json")

        params = UnitParameters(
            task_id=task_id,
            bucket=self._store.bucket,
            region=settings.aws_region,
            timeout_seconds=request.timeout_seconds or settings.default_timeout_seconds,
            cpu=request.cpu or settings.default_cpu,
            memory=request.memory or settings.default_memory,
            auth_key=keys.auth,
            auth_format=auth.format,
            prompt_key=keys.prompt,
            workspace_key=workspace_key,
            repo_url=request.repo_url,
            branch=request.branch,
            model=settings.agent_model,
        )
        with _step("compute"):
            handle = self._compute.start_unit(params, description=request.prompt)

        record = TaskRecord(
            task_id=task_id,
            status="running",
            prompt=request.prompt[:METADATA_PROMPT_LIMIT],
            started_at=self._clock().isoformat(),
            unit_id=handle.unit_id,
        )
        with _step("metadata"):
            self._store.put_metadata(task_id, record)

        logger.info(
            "Launched remote task",
            extra={"task_id": task_id, "unit_id": handle.unit_id, "cpu": params.cpu, "memory": params.memory},
        )
        return LaunchResult(task_id=task_id, unit_id=handle.unit_id, status=handle.status, notes=notes)

    def cancel(self, task_id: str, unit_id: str | None = None) -> CancelResult:
        """Stop a running task and mark it ``cancelled``.

        Terminal tasks are left untouched.
        """

        full_id = self._store.resolve_task_id(task_id)
        record = self._store.get_metadata(full_id) if full_id else None
        if full_id is None or record is None:
            raise TaskNotFoundError(f"No task found with ID: {task_id}")

        if record.is_terminal:
            return CancelResult(
                task_id=full_id,
                cancelled=False,
                message=f"Task {full_id} is already {record.status}, cannot cancel.",
            )

        stopped = False
        target = unit_id or record.unit_id
        if target:
            stopped = self._compute.stop_unit(target)

        # A stopped unit records its own final status on the way out.
        latest = self._store.get_metadata(full_id) or record
        if latest.is_terminal:
            logger.info(
                "Task finished before cancellation was recorded",
                extra={"task_id": full_id, "status": latest.status},
            )
            return CancelResult(
                task_id=full_id,
                cancelled=False,
                message=f"Task {full_id} is already {latest.status}, cannot cancel.",
                unit_stopped=stopped,
            )

        self._store.put_metadata(
            full_id,
            latest.finish("cancelled", completed_at=self._clock().isoformat()),
        )
        logger.info("Cancelled remote task", extra={"task_id": full_id, "unit_id": target})
        return CancelResult(
            task_id=full_id,
            cancelled=True,
            message=f"Task {full_id} has been cancelled.",
            unit_stopped=stopped,
        )


__all__ = [
    "CancelResult",
    "ComputeBackend",
    "LaunchError",
    "LaunchRequest",
    "LaunchResult",
    "TaskLauncher",
]
