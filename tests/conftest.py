from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone
from typing import Any

import pytest
from botocore.exceptions import ClientError

from remote_agent_mcp.config import RemoteAgentSettings
from remote_agent_mcp.storage import TaskStore


def client_error(code: str, operation: str = "GetObject", message: str = "") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message or code}}, operation)


class FakeS3Client:
    """In-memory stand-in for the handful of S3 calls the store makes."""

    def __init__(self, page_size: int = 1000) -> None:
        self.objects: dict[str, dict[str, Any]] = {}
        self.page_size = page_size
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.failing_keys: dict[str, str] = {}
        self._clock = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def _tick(self) -> datetime:
        self._clock += timedelta(seconds=1)
        return self._clock

    def put_object(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("put_object", kwargs))
        self.objects[kwargs["Key"]] = {
            "Body": kwargs["Body"],
            "ContentType": kwargs.get("ContentType"),
            "LastModified": self._tick(),
        }
        return {}

    def get_object(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("get_object", kwargs))
        key = kwargs["Key"]
        if key in self.failing_keys:
            raise client_error(self.failing_keys[key])
        if key not in self.objects:
            raise client_error("NoSuchKey")
        return {"Body": io.BytesIO(self.objects[key]["Body"])}

    def delete_object(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("delete_object", kwargs))
        self.objects.pop(kwargs["Key"], None)
        return {}

    def list_objects_v2(self, **kwargs: Any) -> dict[str, Any]:
        self.calls.append(("list_objects_v2", kwargs))
        keys = sorted(key for key in self.objects if key.startswith(kwargs.get("Prefix", "")))
        start = int(kwargs.get("ContinuationToken") or 0)
        page = keys[start : start + self.page_size]
        response: dict[str, Any] = {
            "Contents": [
                {"Key": key, "LastModified": self.objects[key]["LastModified"]} for key in page
            ],
            "IsTruncated": start + self.page_size < len(keys),
        }
        if response["IsTruncated"]:
            response["NextContinuationToken"] = str(start + self.page_size)
        return response

    def text(self, key: str) -> str:
        body = self.objects[key]["Body"]
        return body.decode("utf-8") if isinstance(body, bytes) else body

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)


class FakeEcsClient:
    def __init__(self) -> None:
        self.run_calls: list[dict[str, Any]] = []
        self.stop_calls: list[dict[str, Any]] = []
        self.run_response: dict[str, Any] | None = None
        self.stop_error: ClientError | None = None

    def run_task(self, **kwargs: Any) -> dict[str, Any]:
        self.run_calls.append(kwargs)
        if self.run_response is not None:
            return self.run_response
        return {
            "tasks": [
                {
                    "taskArn": f"arn:aws:ecs:us-east-1:123456789012:task/cluster/ecs{len(self.run_calls)}",
                    "lastStatus": "PROVISIONING",
                }
            ],
            "failures": [],
        }

    def stop_task(self, **kwargs: Any) -> dict[str, Any]:
        self.stop_calls.append(kwargs)
        if self.stop_error is not None:
            raise self.stop_error
        return {"task": {"taskArn": kwargs["task"], "lastStatus": "STOPPED"}}


@pytest.fixture
def settings() -> RemoteAgentSettings:
    return RemoteAgentSettings(
        aws_region="us-east-1",
        bucket_name="test-bucket",
        cluster_name="remote-agent-cluster",
        task_definition_family="remote-agent",
        container_image_uri="123.dkr.ecr.us-east-1.amazonaws.com/remote-agent:latest",
        subnet_ids=("subnet-a", "subnet-b"),
        security_group_id="sg-123",
        auth_token=None,
        agent_model=None,
        max_poll_duration=12 * 60 * 60,
    )


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def store(s3_client: FakeS3Client) -> TaskStore:
    return TaskStore("test-bucket", client_factory=lambda: s3_client)


@pytest.fixture
def ecs_client() -> FakeEcsClient:
    return FakeEcsClient()


@pytest.fixture
def make_client_error():
    return client_error
