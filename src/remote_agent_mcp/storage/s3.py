"""S3-backed task state store."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Protocol

from botocore.exceptions import ClientError

from .models import (
    FULL_TASK_ID_LENGTH,
    AmbiguousTaskIdError,
    ArtifactKeys,
    TaskRecord,
)

logger = logging.getLogger(__name__)

TASKS_PREFIX = "tasks/"
_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}


class S3ClientProtocol(Protocol):
    """Protocol for the minimal boto3 S3 client API used by the store."""

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        ...

    def get_object(self, **kwargs: Any) -> dict[str, Any]:
        ...

    def delete_object(self, **kwargs: Any) -> dict[str, Any]:
        ...

    def list_objects_v2(self, **kwargs: Any) -> dict[str, Any]:
        ...


def is_not_found(exc: ClientError) -> bool:
    code = str(exc.response.get("Error", {}).get("Code", ""))
    return code in _NOT_FOUND_CODES


class TaskStore:
    """Typed get/put/list access to task metadata and artifacts in one bucket."""

    def __init__(
        self,
        bucket: str,
        *,
        client_factory: Callable[[], S3ClientProtocol],
    ) -> None:
        self._bucket = bucket
        self._client_factory = client_factory
        self._client: S3ClientProtocol | None = None

    @classmethod
    def from_settings(cls, settings) -> "TaskStore":
        return cls(
            settings.bucket_name,
            client_factory=lambda: settings.boto_session().client("s3"),
        )

    @property
    def bucket(self) -> str:
        return self._bucket

    def _ensure_client(self) -> S3ClientProtocol:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    # -- artifacts -----------------------------------------------------

    def put_artifact(self, key: str, body: bytes | str, content_type: str) -> None:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self._ensure_client().put_object(
            Bucket=self._bucket,
            Key=key,
            Body=body,
            ContentType=content_type,
        )

    def get_artifact(self, key: str) -> bytes | None:
        """Return the object body, or ``None`` when the key does not exist."""

        try:
            response = self._ensure_client().get_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if is_not_found(exc):
                return None
            raise
        return response["Body"].read()

    def get_text(self, key: str) -> str | None:
        body = self.get_artifact(key)
        if body is None:
            return None
        return body.decode("utf-8", errors="replace")

    def delete_artifact(self, key: str) -> None:
        try:
            self._ensure_client().delete_object(Bucket=self._bucket, Key=key)
        except ClientError as exc:
            if not is_not_found(exc):
                raise

    # -- metadata ------------------------------------------------------

    def put_metadata(self, task_id: str, record: TaskRecord) -> None:
        self.put_artifact(ArtifactKeys(task_id).metadata, record.to_json(), "application/json")

    def get_metadata(self, task_id: str) -> TaskRecord | None:
        body = self.get_artifact(ArtifactKeys(task_id).metadata)
        if not body:
            return None
        return TaskRecord.from_json(body)

    def get_patch(self, task_id: str) -> str | None:
        return self.get_text(ArtifactKeys(task_id).patch)

    def get_output(self, task_id: str) -> str | None:
        return self.get_text(ArtifactKeys(task_id).output)

    # -- listing -------------------------------------------------------

    def _iter_task_objects(self):
        client = self._ensure_client()
        request: dict[str, Any] = {"Bucket": self._bucket, "Prefix": TASKS_PREFIX}
        while True:
            response = client.list_objects_v2(**request)
            yield from response.get("Contents") or []
            if not response.get("IsTruncated"):
                return
            request["ContinuationToken"] = response["NextContinuationToken"]

    def list_task_ids(self, limit: int | None = None) -> list[str]:
        """Return task ids, most recently created first.

        A task's creation time is the oldest ``LastModified`` among its objects.
        """

        created: dict[str, datetime] = {}
        for item in self._iter_task_objects():
            parts = item["Key"][len(TASKS_PREFIX):].split("/", 1)
            if len(parts) != 2 or not parts[0]:
                continue
            task_id, stamp = parts[0], item["LastModified"]
            if task_id not in created or stamp < created[task_id]:
                created[task_id] = stamp

        ordered = sorted(created, key=lambda task_id: (created[task_id], task_id), reverse=True)
        return ordered[:limit] if limit is not None else ordered

    def list_tasks(self, limit: int = 20) -> list[TaskRecord]:
        tasks: list[TaskRecord] = []
        for task_id in self.list_task_ids(limit):
            record = self.get_metadata(task_id)
            if record is not None:
                tasks.append(record)
        return tasks

    def resolve_task_id(self, prefix: str) -> str | None:
        """Resolve a short/partial task id to the full id.

        Full-length ids are returned unchanged without touching the store.
        """

        prefix = prefix.strip()
        if len(prefix) == FULL_TASK_ID_LENGTH:
            return prefix
        if not prefix:
            return None

        matches = [task_id for task_id in self.list_task_ids() if task_id.startswith(prefix)]
        if not matches:
            return None
        if len(matches) > 1:
            raise AmbiguousTaskIdError(prefix, sorted(matches))
        return matches[0]


__all__ = ["S3ClientProtocol", "TaskStore", "is_not_found"]
