"""CloudWatch Logs reader for execution unit output."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable

from botocore.exceptions import ClientError

from ..config import RemoteAgentSettings


class CloudWatchLogSource:
    """Fetch the most recent log lines written by an execution unit."""

    def __init__(
        self,
        settings: RemoteAgentSettings,
        *,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or (lambda: settings.boto_session().client("logs"))
        self._client: Any | None = None

    def _ensure_client(self) -> Any:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def stream_name(self, task_id: str, unit_id: str | None = None) -> str:
        prefix = self._settings.log_stream_prefix
        if unit_id:
            # awslogs driver: <prefix>/<container>/<ecs task id>
            return f"{prefix}/{self._settings.container_name}/{unit_id.rsplit('/', 1)[-1]}"
        return f"{prefix}/{task_id}"

    def fetch_recent(self, task_id: str, *, unit_id: str | None = None, limit: int = 100) -> list[str]:
        """Return up to ``limit`` recent lines, formatted ``[timestamp] message``."""

        try:
            response = self._ensure_client().get_log_events(
                logGroupName=self._settings.log_group_name,
                logStreamName=self.stream_name(task_id, unit_id),
                limit=limit,
                startFromHead=False,
            )
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "ResourceNotFoundException":
                return []
            raise

        lines = []
        for event in response.get("events") or []:
            stamp = datetime.fromtimestamp((event.get("timestamp") or 0) / 1000, tz=timezone.utc)
            lines.append(f"[{stamp.isoformat()}] {event.get('message', '').rstrip()}")
        return lines


__all__ = ["CloudWatchLogSource"]
