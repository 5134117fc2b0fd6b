"""ECS Fargate backend for starting and stopping execution units."""

from __future__ import annotations

import logging
import re
from typing import Any, Callable

from botocore.exceptions import ClientError

from ..config import RemoteAgentSettings
from .models import ComputeError, UnitHandle, UnitParameters

logger = logging.getLogger(__name__)

TAG_VALUE_LIMIT = 255


def sanitize_tag_value(value: str) -> str:
    """Reduce free text to the characters ECS accepts in tag values."""

    cleaned = re.sub(r"[\r\n\t]+", " ", value)
    cleaned = re.sub(r"[^\w ./:=+\-@]", "", cleaned)
    cleaned = re.sub(r" {2,}", " ", cleaned)
    return cleaned.strip()[:TAG_VALUE_LIMIT]


class EcsComputeBackend:
    """Run one Fargate task per remote agent task."""

    def __init__(
        self,
        settings: RemoteAgentSettings,
        *,
        client_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory or (lambda: settings.boto_session().client("ecs"))
        self._client: Any | None = None

    def _ensure_client(self) -> Any:
        if self._client is None:
            self._client = self._client_factory()
        return self._client

    def start_unit(self, params: UnitParameters, *, description: str = "") -> UnitHandle:
        settings = self._settings
        environment = [
            {"name": name, "value": value} for name, value in params.to_environment().items()
        ]
        try:
            response = self._ensure_client().run_task(
                cluster=settings.cluster_name,
                taskDefinition=settings.task_definition_family,
                launchType="FARGATE",
                count=1,
                networkConfiguration={
                    "awsvpcConfiguration": {
                        "subnets": list(settings.subnet_ids),
                        "securityGroups": [settings.security_group_id],
                        "assignPublicIp": "ENABLED",
                    }
                },
                overrides={
                    "cpu": params.cpu,
                    "memory": params.memory,
                    "containerOverrides": [
                        {
                            "name": settings.container_name,
                            "environment": environment,
                            "cpu": int(params.cpu),
                            "memory": int(params.memory),
                        }
                    ],
                },
                tags=[
                    {"key": "remote-agent:task-id", "value": params.task_id},
                    {"key": "remote-agent:prompt", "value": sanitize_tag_value(description)},
                ],
            )
        except ClientError as exc:
            raise ComputeError(f"Failed to launch ECS task: {exc}") from exc

        tasks = response.get("tasks") or []
        if not tasks or not tasks[0].get("taskArn"):
            failures = response.get("failures") or [{}]
            reason = failures[0].get("reason") or "unknown error"
            raise ComputeError(f"Failed to launch ECS task: {reason}")

        task = tasks[0]
        logger.info(
            "Started execution unit",
            extra={"task_id": params.task_id, "unit_id": task["taskArn"]},
        )
        return UnitHandle(unit_id=task["taskArn"], status=task.get("lastStatus") or "PROVISIONING")

    def stop_unit(self, unit_id: str, *, reason: str = "Cancelled by user via remote-agent") -> bool:
        """Stop a unit; returns ``False`` when it was no longer running."""

        try:
            self._ensure_client().stop_task(
                cluster=self._settings.cluster_name,
                task=unit_id,
                reason=reason,
            )
        except ClientError as exc:
            message = str(exc)
            if "is not in the RUNNING" in message or "STOPPED" in message:
                logger.info("Execution unit already stopped", extra={"unit_id": unit_id})
                return False
            raise ComputeError(f"Error stopping ECS task: {message}") from exc
        return True


__all__ = ["EcsComputeBackend", "sanitize_tag_value"]
