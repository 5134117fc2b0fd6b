"""Environment-driven parameters of an execution unit."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_AGENT_MODEL = "anthropic/claude-sonnet-4-5"


class ExecutionUnitSettings(BaseSettings):
    """Parameters the launcher passes to the unit as environment variables."""

    model_config = SettingsConfigDict(extra="ignore", populate_by_name=True)

    task_id: str = Field(..., validation_alias="TASK_ID")
    bucket: str = Field(..., validation_alias="STORE_BUCKET")
    region: str = Field(default="us-east-1", validation_alias="AWS_DEFAULT_REGION")
    timeout_seconds: int = Field(default=7200, validation_alias="TASK_TIMEOUT")

    auth_key: str | None = Field(default=None, validation_alias="AUTH_KEY")
    auth_format: Literal["opencode-auth", "env-vars"] = Field(
        default="env-vars", validation_alias="AUTH_FORMAT"
    )
    prompt_key: str | None = Field(default=None, validation_alias="PROMPT_KEY")
    task_prompt: str = Field(default="", validation_alias="TASK_PROMPT")
    workspace_key: str | None = Field(default=None, validation_alias="WORKSPACE_KEY")
    repo_url: str | None = Field(default=None, validation_alias="GIT_REPO_URL")
    branch: str | None = Field(default=None, validation_alias="GIT_BRANCH")
    agent_model: str = Field(default=DEFAULT_AGENT_MODEL, validation_alias="REMOTE_AGENT_MODEL")

    work_root: Path = Field(default=Path("/workspace"), validation_alias="REMOTE_AGENT_WORK_ROOT")
    agent_executable: Path | None = Field(default=None, validation_alias="REMOTE_AGENT_AGENT_BIN")

    @field_validator("timeout_seconds")
    @classmethod
    def _validate_timeout(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("TASK_TIMEOUT must be > 0")
        return value


__all__ = ["DEFAULT_AGENT_MODEL", "ExecutionUnitSettings"]
