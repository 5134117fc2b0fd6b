"""Launch parameters and handles for remote execution units."""

from __future__ import annotations

from dataclasses import dataclass

FALLBACK_PROMPT_LIMIT = 500


class ComputeError(RuntimeError):
    """Raised when the compute service refuses to start or stop a unit."""


@dataclass(slots=True)
class UnitParameters:
    """Small scalar parameters handed to an execution unit at launch."""

    task_id: str
    bucket: str
    region: str
    timeout_seconds: int
    cpu: str
    memory: str
    auth_key: str | None = None
    auth_format: str | None = None
    prompt_key: str | None = None
    fallback_prompt: str | None = None
    workspace_key: str | None = None
    repo_url: str | None = None
    branch: str | None = None
    model: str | None = None

    def to_environment(self) -> dict[str, str]:
        """Render the parameters as the unit's environment variables."""

        env = {
            "TASK_ID": self.task_id,
            "STORE_BUCKET": self.bucket,
            "AWS_DEFAULT_REGION": self.region,
            "TASK_TIMEOUT": str(self.timeout_seconds),
        }
        optional = {
            "AUTH_KEY": self.auth_key,
            "AUTH_FORMAT": self.auth_format,
            "PROMPT_KEY": self.prompt_key,
            "WORKSPACE_KEY": self.workspace_key,
            "GIT_REPO_URL": self.repo_url,
            "GIT_BRANCH": self.branch,
            "REMOTE_AGENT_MODEL": self.model,
        }
        env.update({key: value for key, value in optional.items() if value})
        # Inline prompt only when there is no prompt artifact to fetch.
        if not self.prompt_key and self.fallback_prompt:
            env["TASK_PROMPT"] = self.fallback_prompt[:FALLBACK_PROMPT_LIMIT]
        return env


@dataclass(slots=True)
class UnitHandle:
    unit_id: str
    status: str


__all__ = ["ComputeError", "FALLBACK_PROMPT_LIMIT", "UnitHandle", "UnitParameters"]
