"""Asynchronous lifecycle tracking for remote tasks."""

from .milestones import clean_log_line, extract_milestones, is_milestone
from .scheduler import AsyncioScheduler, Scheduler, TimerHandle, VirtualScheduler
from .tracker import SessionInbox, TaskTracker, TrackedTask, TrackingEvent, format_elapsed

__all__ = [
    "AsyncioScheduler",
    "Scheduler",
    "SessionInbox",
    "TaskTracker",
    "TimerHandle",
    "TrackedTask",
    "TrackingEvent",
    "VirtualScheduler",
    "clean_log_line",
    "extract_milestones",
    "format_elapsed",
    "is_milestone",
]
