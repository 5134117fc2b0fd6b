"""Poll running tasks and turn store/log changes into tracking events."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Literal, Protocol

from ..config import RemoteAgentSettings
from ..patch import format_bytes, patch_stats, summarize_patch
from ..storage import TaskRecord, TaskStore
from .milestones import extract_milestones
from .scheduler import AsyncioScheduler, Scheduler, TimerHandle

logger = logging.getLogger(__name__)

PROMPT_PREVIEW_LIMIT = 60
REPORT_FILE_LIMIT = 10

TrackingEventKind = Literal["running", "milestones", "completed", "failed", "cancelled", "polling_stopped"]
TrackingPhase = Literal["pending", "running", "terminal"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_elapsed(seconds: float) -> str:
    secs = int(seconds)
    if secs < 60:
        return f"{secs}s"
    mins, rem_secs = divmod(secs, 60)
    if mins < 60:
        return f"{mins}m {rem_secs}s"
    hours, rem_mins = divmod(mins, 60)
    return f"{hours}h {rem_mins}m"


@dataclass(slots=True)
class TrackingEvent:
    task_id: str
    session_id: str | None
    kind: TrackingEventKind
    text: str
    created_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "session_id": self.session_id,
            "kind": self.kind,
            "text": self.text,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class TrackedTask:
    task_id: str
    session_id: str | None
    short_id: str
    prompt_preview: str
    started_at: float
    phase: TrackingPhase = "pending"
    last_status: str | None = None
    unit_id: str | None = None
    seen_log_lines: set[str] = field(default_factory=set)
    metadata_timer: TimerHandle | None = None
    log_timer: TimerHandle | None = None
    finalized: bool = False


class LogSource(Protocol):
    def fetch_recent(self, task_id: str, *, unit_id: str | None = None, limit: int = 100) -> list[str]:
        ...


EventSink = Callable[[TrackingEvent], None]


class SessionInbox:
    """Per-session queue of tracking events, drained by the MCP client."""

    def __init__(self, max_events: int = 500) -> None:
        self._max_events = max_events
        self._queues: dict[str | None, deque[TrackingEvent]] = {}

    def __call__(self, event: TrackingEvent) -> None:
        self.publish(event)

    def publish(self, event: TrackingEvent) -> None:
        queue = self._queues.setdefault(event.session_id, deque(maxlen=self._max_events))
        queue.append(event)

    def drain(self, session_id: str | None = None, *, all_sessions: bool = False) -> list[TrackingEvent]:
        if all_sessions:
            events = [event for queue in self._queues.values() for event in queue]
            self._queues.clear()
            return sorted(events, key=lambda event: event.created_at)
        queue = self._queues.pop(session_id, None)
        return list(queue or [])

    def pending(self, session_id: str | None = None) -> int:
        return len(self._queues.get(session_id) or ())


class TaskTracker:
    """Track remote tasks with two periodic polls each.

    The metadata poll reports status transitions and the final report; the
    log poll reports new milestone lines. Both polls swallow store and log
    errors and try again on the next tick.
    """

    def __init__(
        self,
        store: TaskStore,
        log_source: LogSource,
        sink: EventSink,
        *,
        settings: RemoteAgentSettings,
        scheduler: Scheduler | None = None,
    ) -> None:
        self._store = store
        self._log_source = log_source
        self._sink = sink
        self._scheduler = scheduler or AsyncioScheduler()
        self._metadata_interval = settings.metadata_poll_interval
        self._log_interval = settings.log_poll_interval
        self._log_offset = settings.log_poll_offset
        self._max_duration = settings.max_poll_duration
        self._log_lines = settings.log_poll_lines
        self._tasks: dict[str, TrackedTask] = {}

    # -- registry ------------------------------------------------------

    def track(self, task_id: str, session_id: str | None = None, prompt: str = "") -> bool:
        """Start polling ``task_id``; returns ``False`` if it was already tracked."""

        if task_id in self._tasks:
            return False

        preview = prompt if len(prompt) <= PROMPT_PREVIEW_LIMIT else prompt[:PROMPT_PREVIEW_LIMIT] + "..."
        tracked = TrackedTask(
            task_id=task_id,
            session_id=session_id,
            short_id=task_id[:8],
            prompt_preview=preview,
            started_at=self._scheduler.now(),
        )
        tracked.metadata_timer = self._scheduler.every(
            self._metadata_interval, lambda: self._poll_metadata(tracked)
        )
        tracked.log_timer = self._scheduler.every(
            self._log_interval,
            lambda: self._poll_logs(tracked),
            delay=self._log_interval + self._log_offset,
        )
        self._tasks[task_id] = tracked
        logger.info("Tracking remote task", extra={"task_id": task_id, "session_id": session_id})
        return True

    def untrack(self, task_id: str) -> bool:
        tracked = self._tasks.pop(task_id, None)
        if tracked is None:
            return False
        for timer in (tracked.metadata_timer, tracked.log_timer):
            if timer is not None:
                timer.cancel()
        logger.info("Stopped tracking remote task", extra={"task_id": task_id})
        return True

    def stop_all(self) -> None:
        for task_id in list(self._tasks):
            self.untrack(task_id)

    def is_tracking(self, task_id: str) -> bool:
        return task_id in self._tasks

    @property
    def active_count(self) -> int:
        return len(self._tasks)

    def tracked_ids(self) -> list[str]:
        return list(self._tasks)

    def get(self, task_id: str) -> TrackedTask | None:
        return self._tasks.get(task_id)

    # -- polling -------------------------------------------------------

    def _elapsed(self, tracked: TrackedTask) -> str:
        return format_elapsed(self._scheduler.now() - tracked.started_at)

    def _emit(self, tracked: TrackedTask, kind: TrackingEventKind, text: str) -> None:
        event = TrackingEvent(task_id=tracked.task_id, session_id=tracked.session_id, kind=kind, text=text)
        try:
            self._sink(event)
        except Exception as exc:
            logger.warning(
                "Failed to deliver tracking event",
                extra={"task_id": tracked.task_id, "kind": kind, "error": str(exc)},
            )

    async def _poll_metadata(self, tracked: TrackedTask) -> None:
        if tracked.finalized:
            return
        if self._scheduler.now() - tracked.started_at > self._max_duration:
            tracked.finalized = True
            self.untrack(tracked.task_id)
            self._emit(
                tracked,
                "polling_stopped",
                f"[remote-agent] Task {tracked.short_id}: polling stopped (exceeded max duration)",
            )
            return

        try:
            record = await asyncio.to_thread(self._store.get_metadata, tracked.task_id)
        except Exception as exc:
            logger.debug("Metadata poll failed", extra={"task_id": tracked.task_id, "error": str(exc)})
            return
        if record is None or tracked.finalized:
            return

        if record.unit_id:
            tracked.unit_id = record.unit_id
        if record.status != tracked.last_status:
            tracked.last_status = record.status
            if record.status == "running" and tracked.phase == "pending":
                tracked.phase = "running"
                self._emit(
                    tracked,
                    "running",
                    f"[remote-agent] Task {tracked.short_id} is now running "
                    f"({self._elapsed(tracked)} since launch)",
                )

        if record.is_terminal:
            # Flag first: an overlapping poll must not report twice.
            tracked.finalized = True
            tracked.phase = "terminal"
            self.untrack(tracked.task_id)
            report = await self._completion_report(tracked, record)
            self._emit(tracked, record.status, report)

    async def _poll_logs(self, tracked: TrackedTask) -> None:
        if tracked.finalized:
            return
        try:
            lines = await asyncio.to_thread(
                self._log_source.fetch_recent,
                tracked.task_id,
                unit_id=tracked.unit_id,
                limit=self._log_lines,
            )
        except Exception as exc:
            logger.debug("Log poll failed", extra={"task_id": tracked.task_id, "error": str(exc)})
            return
        if tracked.finalized:
            return

        fresh = [line for line in extract_milestones(lines) if line not in tracked.seen_log_lines]
        if not fresh:
            return
        tracked.seen_log_lines.update(fresh)
        body = "\n".join(f"  {line}" for line in fresh)
        self._emit(
            tracked,
            "milestones",
            f"[remote-agent] Task {tracked.short_id} ({self._elapsed(tracked)}):\n{body}",
        )

    async def _completion_report(self, tracked: TrackedTask, record: TaskRecord) -> str:
        elapsed = self._elapsed(tracked)
        lines: list[str] = []

        if record.status == "completed":
            lines.append(f"[remote-agent] Task {tracked.short_id} completed ({elapsed})")
            if record.exit_code not in (None, 0):
                lines.append(f"   Exit code: {record.exit_code}")
            try:
                patch = await asyncio.to_thread(self._store.get_patch, tracked.task_id)
            except Exception as exc:
                logger.debug("Patch fetch failed", extra={"task_id": tracked.task_id, "error": str(exc)})
                lines.append("   Could not check patch status.")
            else:
                if patch and patch.strip():
                    line_count, byte_count = patch_stats(patch)
                    files = summarize_patch(patch)
                    lines.append(f"   Patch: {line_count} lines ({format_bytes(byte_count)})")
                    if files:
                        lines.append("   Files changed:")
                        lines.extend(f"     {name}" for name in files[:REPORT_FILE_LIMIT])
                        if len(files) > REPORT_FILE_LIMIT:
                            lines.append(f"     ... and {len(files) - REPORT_FILE_LIMIT} more")
                    lines.append("")
                    lines.append(
                        f'   Apply with: remote_status tool (task_id="{tracked.task_id}", apply_patch_locally=true)'
                    )
                else:
                    lines.append("   No file changes were made.")
        elif record.status == "failed":
            lines.append(f"[remote-agent] Task {tracked.short_id} failed ({elapsed})")
            if record.error:
                lines.append(f"   Error: {record.error}")
            if record.exit_code is not None:
                lines.append(f"   Exit code: {record.exit_code}")
            lines.append("")
            lines.append(
                f'   View logs: remote_status tool (task_id="{tracked.task_id}", include_logs=true)'
            )
        else:
            lines.append(f"[remote-agent] Task {tracked.short_id} was cancelled ({elapsed})")

        return "\n".join(lines)


__all__ = [
    "EventSink",
    "LogSource",
    "SessionInbox",
    "TaskTracker",
    "TrackedTask",
    "TrackingEvent",
    "format_elapsed",
]
