"""Application context shared by the MCP tools."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from .auth import resolve_container_auth
from .compute import CloudWatchLogSource, EcsComputeBackend
from .config import RemoteAgentSettings
from .launcher import ComputeBackend, TaskLauncher
from .session_context import ContextProvider
from .storage import TaskStore
from .tracking import Scheduler, SessionInbox, TaskTracker
from .tracking.tracker import LogSource


@dataclass(slots=True)
class RemoteAgentContext:
    """Every collaborator the controller needs, built once at startup."""

    settings: RemoteAgentSettings
    store: TaskStore
    compute: ComputeBackend
    log_source: LogSource
    launcher: TaskLauncher
    tracker: TaskTracker
    inbox: SessionInbox
    workspace_dir: Path | None = None

    @classmethod
    def build(
        cls,
        settings: RemoteAgentSettings,
        *,
        store: TaskStore | None = None,
        compute: ComputeBackend | None = None,
        log_source: LogSource | None = None,
        scheduler: Scheduler | None = None,
        context_provider: ContextProvider | None = None,
        auth_resolver=resolve_container_auth,
        workspace_dir: Path | None = None,
    ) -> "RemoteAgentContext":
        store = store or TaskStore.from_settings(settings)
        compute = compute or EcsComputeBackend(settings)
        log_source = log_source or CloudWatchLogSource(settings)
        inbox = SessionInbox()
        launcher = TaskLauncher(
            settings,
            store,
            compute,
            auth_resolver=auth_resolver,
            context_provider=context_provider,
        )
        tracker = TaskTracker(store, log_source, inbox, settings=settings, scheduler=scheduler)
        return cls(
            settings=settings,
            store=store,
            compute=compute,
            log_source=log_source,
            launcher=launcher,
            tracker=tracker,
            inbox=inbox,
            workspace_dir=workspace_dir,
        )


__all__ = ["RemoteAgentContext"]
