"""Data models for task state kept in the object store."""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

TaskStatus = Literal["running", "completed", "failed", "cancelled"]
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "cancelled"})

FULL_TASK_ID_LENGTH = 36


class TaskStoreError(RuntimeError):
    """Base class for task store errors."""


class MalformedTaskRecordError(TaskStoreError):
    """Raised when a stored metadata record cannot be validated."""


class AmbiguousTaskIdError(TaskStoreError):
    """Raised when a task id prefix matches more than one task."""

    def __init__(self, prefix: str, candidates: list[str]) -> None:
        self.prefix = prefix
        self.candidates = list(candidates)
        super().__init__(
            f'Ambiguous task ID prefix "{prefix}" matches {len(candidates)} tasks: '
            f"{', '.join(candidates)}. Please provide more characters."
        )


class TaskNotFoundError(LookupError):
    """Raised when a task id (or prefix) does not match any stored task."""


class TaskAlreadyTerminalError(ValueError):
    """Raised on an attempt to move a task out of (or between) terminal states."""


class TaskRecord(BaseModel):
    """The ``metadata.json`` record of a task."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    task_id: str = Field(..., alias="taskId")
    status: TaskStatus
    prompt: str = ""
    started_at: str = Field(..., alias="startedAt")
    completed_at: str | None = Field(default=None, alias="completedAt")
    exit_code: int | None = Field(default=None, alias="exitCode")
    error: str | None = None
    unit_id: str | None = Field(default=None, alias="unitId")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def short_id(self) -> str:
        return self.task_id[:8]

    def finish(
        self,
        status: TaskStatus,
        *,
        completed_at: str,
        exit_code: int | None = None,
        error: str | None = None,
    ) -> "TaskRecord":
        """Return a terminal copy of this record.

        A terminal status is written once and never changes again.
        """

        if status not in TERMINAL_STATUSES:
            raise TaskAlreadyTerminalError(f"'{status}' is not a terminal status")
        if self.is_terminal:
            raise TaskAlreadyTerminalError(
                f"Task {self.task_id} is already {self.status}, cannot mark it {status}"
            )
        return self.model_copy(
            update={
                "status": status,
                "completed_at": completed_at,
                "exit_code": exit_code if exit_code is not None else self.exit_code,
                "error": error if error is not None else self.error,
            }
        )

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_none=True, indent=2)

    @classmethod
    def from_json(cls, payload: str | bytes) -> "TaskRecord":
        try:
            return cls.model_validate(json.loads(payload))
        except (ValueError, ValidationError) as exc:
            raise MalformedTaskRecordError(f"Invalid task metadata: {exc}") from exc


@dataclass(frozen=True, slots=True)
class ArtifactKeys:
    """Object keys for one task, namespaced under ``tasks/{id}/``."""

    task_id: str

    @property
    def prefix(self) -> str:
        return f"tasks/{self.task_id}/"

    @property
    def metadata(self) -> str:
        return f"{self.prefix}metadata.json"

    @property
    def workspace(self) -> str:
        return f"{self.prefix}workspace.tar.gz"

    @property
    def prompt(self) -> str:
        return f"{self.prefix}prompt.txt"

    @property
    def auth(self) -> str:
        return f"{self.prefix}auth.json"

    @property
    def output(self) -> str:
        return f"{self.prefix}output.txt"

    @property
    def patch(self) -> str:
        return f"{self.prefix}changes.patch"


__all__ = [
    "AmbiguousTaskIdError",
    "ArtifactKeys",
    "FULL_TASK_ID_LENGTH",
    "MalformedTaskRecordError",
    "TERMINAL_STATUSES",
    "TaskAlreadyTerminalError",
    "TaskNotFoundError",
    "TaskRecord",
    "TaskStatus",
    "TaskStoreError",
]
