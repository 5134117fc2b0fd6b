"""Object-store abstractions for task state."""

from .models import (
    AmbiguousTaskIdError,
    ArtifactKeys,
    MalformedTaskRecordError,
    TERMINAL_STATUSES,
    TaskAlreadyTerminalError,
    TaskNotFoundError,
    TaskRecord,
    TaskStatus,
    TaskStoreError,
)
from .s3 import TaskStore

__all__ = [
    "AmbiguousTaskIdError",
    "ArtifactKeys",
    "MalformedTaskRecordError",
    "TERMINAL_STATUSES",
    "TaskAlreadyTerminalError",
    "TaskNotFoundError",
    "TaskRecord",
    "TaskStatus",
    "TaskStore",
    "TaskStoreError",
]
