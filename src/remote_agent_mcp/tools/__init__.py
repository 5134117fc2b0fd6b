"""Tool registration for the remote agent MCP server."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Literal

from fastmcp import Context, FastMCP

from ..context import RemoteAgentContext
from ..launcher import LaunchRequest
from ..patch import apply_patch, patch_stats, summarize_patch
from ..storage import TaskNotFoundError, TaskRecord

logger = logging.getLogger(__name__)

OUTPUT_PREVIEW_LIMIT = 10_000
INLINE_PATCH_LIMIT = 5_000
PATCH_PREVIEW_LIMIT = 10_000
MAX_TIMEOUT_MINUTES = 720
MAX_LOG_LINES = 500


@dataclass(slots=True)
class ToolHandles:
    remote_run: Any
    remote_status: Any
    remote_list: Any
    remote_cancel: Any
    remote_watch: Any
    remote_events: Any


def _emit_log(
    context: Context | None,
    level: str,
    message: str,
    *,
    extra: dict[str, Any] | None = None,
) -> None:
    """Best-effort logging that prefers the MCP context logger when available."""

    payload = extra or {}

    if context is not None:
        ctx_logger = getattr(context, "logger", None)
        if ctx_logger is not None:
            log_method = getattr(ctx_logger, level, None)
            if callable(log_method):
                log_method(message, extra=payload)
                return

    fallback = getattr(logger, level, logger.info)
    fallback(message, extra=payload)


def _session_id(context: Context | None, explicit: str | None) -> str | None:
    if explicit:
        return explicit
    if context is None:
        return None
    try:
        return getattr(context, "session_id", None)
    except RuntimeError:
        # No active MCP request (e.g. direct calls).
        return None


def _task_summary(record: TaskRecord, *, tracking: bool) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "task_id": record.task_id,
        "short_id": record.short_id,
        "status": record.status,
        "prompt": record.prompt,
        "started_at": record.started_at,
        "completed_at": record.completed_at,
        "exit_code": record.exit_code,
        "error": record.error,
        "unit_id": record.unit_id,
        "tracking": tracking,
    }
    if record.completed_at:
        try:
            started = datetime.fromisoformat(record.started_at)
            completed = datetime.fromisoformat(record.completed_at)
        except ValueError:
            pass
        else:
            summary["duration_minutes"] = round((completed - started).total_seconds() / 60)
    return summary


def register_tools(server: FastMCP, *, app: RemoteAgentContext) -> ToolHandles:
    """Register the remote agent tools on the server."""

    def _resolve(task_id: str) -> str:
        full_id = app.store.resolve_task_id(task_id)
        if full_id is None:
            raise TaskNotFoundError(f"No task found with ID: {task_id}")
        return full_id

    def _load(task_id: str) -> TaskRecord:
        full_id = _resolve(task_id)
        record = app.store.get_metadata(full_id)
        if record is None:
            raise TaskNotFoundError(f"No task found with ID: {task_id}")
        return record

    async def _remote_run(
        prompt: str,
        repo_url: str | None = None,
        branch: str | None = None,
        cpu: Literal["256", "512", "1024", "2048", "4096"] | None = None,
        memory: Literal["512", "1024", "2048", "4096", "8192", "16384", "30720"] | None = None,
        timeout_minutes: int | None = None,
        include_workspace: bool = True,
        workspace_dir: str | None = None,
        include_session_context: bool = True,
        session_context: str | None = None,
        session_id: str | None = None,
        track: bool = True,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Launch a coding agent task on remote compute."""

        if timeout_minutes is not None and not 1 <= timeout_minutes <= MAX_TIMEOUT_MINUTES:
            raise ValueError(f"timeout_minutes must be between 1 and {MAX_TIMEOUT_MINUTES}")

        workspace: Path | None = None
        if include_workspace and not repo_url:
            workspace = Path(workspace_dir) if workspace_dir else (app.workspace_dir or Path.cwd())

        session = _session_id(context, session_id)
        request = LaunchRequest(
            prompt=prompt,
            cpu=cpu,
            memory=memory,
            timeout_seconds=timeout_minutes * 60 if timeout_minutes else None,
            repo_url=repo_url,
            branch=branch,
            workspace_dir=workspace,
            include_context=include_session_context,
            session_id=session,
            session_context=session_context,
        )
        result = await asyncio.to_thread(app.launcher.launch, request)

        notes = list(result.notes)
        tracking = False
        if track:
            tracking = app.tracker.track(result.task_id, session, prompt)
            notes.append("Auto-tracking enabled (drain updates with remote_events)")

        _emit_log(
            context,
            "info",
            "Remote task launched",
            extra={"task_id": result.task_id, "unit_id": result.unit_id, "tracking": tracking},
        )
        return {
            "task_id": result.task_id,
            "short_id": result.task_id[:8],
            "unit_id": result.unit_id,
            "status": result.status,
            "tracking": tracking,
            "notes": notes,
        }

    async def _remote_status(
        task_id: str,
        include_logs: bool = False,
        log_lines: int = 50,
        apply_patch_locally: bool = False,
        download_patch: bool | None = None,
        workspace_dir: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Report a task's status, output, patch and optionally recent logs."""

        if not 1 <= log_lines <= MAX_LOG_LINES:
            raise ValueError(f"log_lines must be between 1 and {MAX_LOG_LINES}")

        record = await asyncio.to_thread(_load, task_id)
        response = _task_summary(record, tracking=app.tracker.is_tracking(record.task_id))

        if record.status in ("completed", "failed"):
            output = await asyncio.to_thread(app.store.get_output, record.task_id)
            if output:
                response["output"] = (
                    output[:OUTPUT_PREVIEW_LIMIT] + "\n... (truncated, full output in store)"
                    if len(output) > OUTPUT_PREVIEW_LIMIT
                    else output
                )

            patch = await asyncio.to_thread(app.store.get_patch, record.task_id)
            if patch and patch.strip():
                line_count, byte_count = patch_stats(patch)
                patch_info: dict[str, Any] = {
                    "lines": line_count,
                    "bytes": byte_count,
                    "files": summarize_patch(patch),
                }
                if apply_patch_locally:
                    target = Path(workspace_dir) if workspace_dir else (app.workspace_dir or Path.cwd())
                    result = await asyncio.to_thread(apply_patch, patch, target, record.task_id)
                    patch_info.update(
                        {
                            "applied": result.applied,
                            "directory": str(target),
                            "patch_path": str(result.patch_path),
                            "apply_output": result.output,
                            "error": result.error,
                            "hints": result.hints,
                        }
                    )
                elif download_patch or (download_patch is None and byte_count < INLINE_PATCH_LIMIT):
                    patch_info["content"] = (
                        patch[:PATCH_PREVIEW_LIMIT] + "\n... (truncated)"
                        if byte_count > PATCH_PREVIEW_LIMIT
                        else patch
                    )
                    patch_info["hint"] = "Use remote_status with apply_patch_locally=true to apply these changes."
                else:
                    patch_info["hint"] = (
                        f"Patch is {byte_count} bytes. Use download_patch=true to view it, "
                        "or apply_patch_locally=true to apply it directly."
                    )
                response["patch"] = patch_info
            elif record.status == "completed":
                response["changes"] = "No file changes were made by the remote agent."

        if include_logs:
            response["logs"] = await asyncio.to_thread(
                app.log_source.fetch_recent,
                record.task_id,
                unit_id=record.unit_id,
                limit=log_lines,
            )

        _emit_log(
            context,
            "debug",
            "Task status",
            extra={"task_id": record.task_id, "status": record.status},
        )
        return response

    async def _remote_list(
        limit: int = 20,
        status: Literal["running", "completed", "failed", "cancelled"] | None = None,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """List recent tasks, newest first."""

        records = await asyncio.to_thread(app.store.list_tasks, limit)
        if status is not None:
            records = [record for record in records if record.status == status]
        _emit_log(context, "debug", "Listing remote tasks", extra={"count": len(records)})
        return [
            {
                "task_id": record.task_id,
                "short_id": record.short_id,
                "status": record.status,
                "started_at": record.started_at,
                "completed_at": record.completed_at,
                "prompt_preview": record.prompt[:80],
                "tracking": app.tracker.is_tracking(record.task_id),
            }
            for record in records
        ]

    async def _remote_cancel(
        task_id: str,
        unit_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Cancel a running task and stop its compute unit."""

        result = await asyncio.to_thread(app.launcher.cancel, task_id, unit_id)
        _emit_log(
            context,
            "info",
            "Cancel requested",
            extra={"task_id": result.task_id, "cancelled": result.cancelled},
        )
        return {
            "task_id": result.task_id,
            "cancelled": result.cancelled,
            "unit_stopped": result.unit_stopped,
            "message": result.message,
        }

    async def _remote_watch(
        action: Literal["start", "stop", "list"] = "list",
        task_id: str | None = None,
        session_id: str | None = None,
        context: Context | None = None,
    ) -> dict[str, Any]:
        """Start, stop or list live tracking of tasks."""

        tracker = app.tracker
        if action == "list":
            tracked = []
            for tracked_id in tracker.tracked_ids():
                item = tracker.get(tracked_id)
                if item is None:
                    continue
                tracked.append(
                    {
                        "task_id": item.task_id,
                        "short_id": item.short_id,
                        "session_id": item.session_id,
                        "prompt_preview": item.prompt_preview,
                        "phase": item.phase,
                        "last_status": item.last_status,
                    }
                )
            return {"active_count": tracker.active_count, "tasks": tracked}

        if action == "stop":
            if task_id is None:
                count = tracker.active_count
                tracker.stop_all()
                return {"stopped": count, "message": f"Stopped tracking {count} task(s)."}
            full_id = await asyncio.to_thread(_resolve, task_id)
            stopped = tracker.untrack(full_id)
            return {
                "task_id": full_id,
                "stopped": int(stopped),
                "message": f"Stopped tracking {full_id}." if stopped else f"Task {full_id} was not tracked.",
            }

        if task_id is None:
            raise ValueError("task_id is required to start tracking")
        record = await asyncio.to_thread(_load, task_id)
        if record.is_terminal:
            return {
                "task_id": record.task_id,
                "tracking": False,
                "message": f"Task {record.task_id} is already {record.status}.",
            }
        started = tracker.track(record.task_id, _session_id(context, session_id), record.prompt)
        _emit_log(context, "info", "Tracking started", extra={"task_id": record.task_id, "new": started})
        return {
            "task_id": record.task_id,
            "tracking": True,
            "message": (
                f"Now tracking {record.task_id}." if started else f"Task {record.task_id} is already tracked."
            ),
        }

    async def _remote_events(
        session_id: str | None = None,
        all_sessions: bool = False,
        context: Context | None = None,
    ) -> list[dict[str, Any]]:
        """Return (and clear) tracking events queued for a session."""

        events = app.inbox.drain(_session_id(context, session_id), all_sessions=all_sessions)
        return [event.to_dict() for event in events]

    tool_run = server.tool(
        name="remote_run",
        description=(
            "Launch a coding agent task on an ephemeral remote container. Uploads the local "
            "workspace (or clones repo_url) and returns a task id. Progress is tracked "
            "automatically; use remote_status to inspect results and apply the patch."
        ),
    )(_remote_run)

    tool_status = server.tool(
        name="remote_status",
        description=(
            "Check a remote task's status, output and changes patch. Accepts a full id or "
            "an unambiguous prefix. Set apply_patch_locally=true to apply the patch."
        ),
    )(_remote_status)

    tool_list = server.tool(
        name="remote_list",
        description="List recent remote agent tasks, newest first.",
    )(_remote_list)

    tool_cancel = server.tool(
        name="remote_cancel",
        description="Cancel a running remote task and stop its container.",
    )(_remote_cancel)

    tool_watch = server.tool(
        name="remote_watch",
        description="Start, stop or list live tracking of remote tasks.",
    )(_remote_watch)

    tool_events = server.tool(
        name="remote_events",
        description="Drain status transitions, log milestones and completion reports for a session.",
    )(_remote_events)

    return ToolHandles(
        remote_run=tool_run,
        remote_status=tool_status,
        remote_list=tool_list,
        remote_cancel=tool_cancel,
        remote_watch=tool_watch,
        remote_events=tool_events,
    )


__all__ = ["ToolHandles", "register_tools"]
