from __future__ import annotations

import pytest

from remote_agent_mcp.compute import (
    CloudWatchLogSource,
    ComputeError,
    EcsComputeBackend,
    UnitParameters,
)
from remote_agent_mcp.compute.ecs import sanitize_tag_value

TASK_ID = "12345678-aaaa-4bbb-8ccc-1234567890ab"


def _params(**overrides) -> UnitParameters:
    values = dict(
        task_id=TASK_ID,
        bucket="test-bucket",
        region="us-east-1",
        timeout_seconds=600,
        cpu="1024",
        memory="4096",
        prompt_key=f"tasks/{TASK_ID}/prompt.txt",
        fallback_prompt="x" * 800,
    )
    values.update(overrides)
    return UnitParameters(**values)


def test_environment_omits_inline_prompt_when_artifact_exists() -> None:
    env = _params().to_environment()

    assert env["TASK_ID"] == TASK_ID
    assert env["TASK_TIMEOUT"] == "600"
    assert env["PROMPT_KEY"].endswith("prompt.txt")
    assert "TASK_PROMPT" not in env
    assert "GIT_REPO_URL" not in env


def test_environment_truncates_inline_prompt() -> None:
    env = _params(prompt_key=None).to_environment()

    assert len(env["TASK_PROMPT"]) == 500


def test_start_unit_builds_fargate_request(settings, ecs_client) -> None:
    backend = EcsComputeBackend(settings, client_factory=lambda: ecs_client)

    handle = backend.start_unit(_params(repo_url="https://example.com/r.git"), description="Fix\nthe <bug>")

    assert handle.unit_id.endswith("/ecs1")
    call = ecs_client.run_calls[0]
    assert call["launchType"] == "FARGATE"
    assert call["cluster"] == "remote-agent-cluster"
    network = call["networkConfiguration"]["awsvpcConfiguration"]
    assert network["subnets"] == ["subnet-a", "subnet-b"]
    assert network["securityGroups"] == ["sg-123"]
    container = call["overrides"]["containerOverrides"][0]
    env = {item["name"]: item["value"] for item in container["environment"]}
    assert env["GIT_REPO_URL"] == "https://example.com/r.git"
    tags = {tag["key"]: tag["value"] for tag in call["tags"]}
    assert tags["remote-agent:task-id"] == TASK_ID
    assert tags["remote-agent:prompt"] == "Fix the bug"


def test_start_unit_reports_service_failures(settings, ecs_client, make_client_error) -> None:
    backend = EcsComputeBackend(settings, client_factory=lambda: ecs_client)
    ecs_client.run_response = {"tasks": [], "failures": [{"reason": "RESOURCE:MEMORY"}]}

    with pytest.raises(ComputeError, match="RESOURCE:MEMORY"):
        backend.start_unit(_params())

    ecs_client.run_response = None
    failing = EcsComputeBackend(settings, client_factory=lambda: _RaisingEcs(make_client_error("AccessDenied", "RunTask")))
    with pytest.raises(ComputeError, match="Failed to launch"):
        failing.start_unit(_params())


class _RaisingEcs:
    def __init__(self, error) -> None:
        self.error = error

    def run_task(self, **kwargs):
        raise self.error


def test_stop_unit_tolerates_stopped_units(settings, ecs_client, make_client_error) -> None:
    backend = EcsComputeBackend(settings, client_factory=lambda: ecs_client)

    assert backend.stop_unit("arn:task/1") is True

    ecs_client.stop_error = make_client_error("InvalidParameterException", "StopTask", "The task is STOPPED")
    assert backend.stop_unit("arn:task/1") is False

    ecs_client.stop_error = make_client_error("AccessDeniedException", "StopTask", "denied")
    with pytest.raises(ComputeError):
        backend.stop_unit("arn:task/1")


def test_tag_values_are_sanitized() -> None:
    assert sanitize_tag_value("a\tb  c!?") == "a b c"
    assert len(sanitize_tag_value("y" * 400)) == 255


class StubLogs:
    def __init__(self, events=None, error=None) -> None:
        self.events = events or []
        self.error = error
        self.calls: list[dict] = []

    def get_log_events(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return {"events": self.events}


def test_log_lines_are_formatted_with_timestamps(settings) -> None:
    client = StubLogs([{"timestamp": 0, "message": "=== Starting agent ===\n"}])
    source = CloudWatchLogSource(settings, client_factory=lambda: client)

    lines = source.fetch_recent(TASK_ID, unit_id="arn:aws:ecs:us-east-1:1:task/cluster/abc123", limit=5)

    assert lines == ["[1970-01-01T00:00:00+00:00] === Starting agent ==="]
    assert client.calls[0]["logStreamName"] == "remote-agent/remote-agent/abc123"
    assert client.calls[0]["limit"] == 5
    assert client.calls[0]["startFromHead"] is False


def test_missing_log_stream_yields_no_lines(settings, make_client_error) -> None:
    client = StubLogs(error=make_client_error("ResourceNotFoundException", "GetLogEvents"))
    source = CloudWatchLogSource(settings, client_factory=lambda: client)

    assert source.fetch_recent(TASK_ID) == []
    assert client.calls[0]["logStreamName"] == f"remote-agent/{TASK_ID}"
