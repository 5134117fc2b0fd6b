"""Configuration management for the remote agent controller."""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from pathlib import Path
from typing import Annotated, Any, Callable

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import Field, field_validator
from pydantic_settings import (
    BaseSettings,
    NoDecode,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    YamlConfigSettingsSource,
)

logger = logging.getLogger(__name__)

CPU_CHOICES = ("256", "512", "1024", "2048", "4096")
MEMORY_CHOICES = ("512", "1024", "2048", "4096", "8192", "16384", "30720")

DEFAULT_CONFIG_FILE = Path("remote-agent.yaml")
DEFAULT_LOG_GROUP = "/ecs/remote-agent"

# Fields that must be known before a unit can be launched.
INFRASTRUCTURE_FIELDS = (
    "bucket_name",
    "cluster_name",
    "task_definition_family",
    "container_image_uri",
    "subnet_ids",
    "security_group_id",
)


class RemoteAgentSettings(BaseSettings):
    """Runtime configuration sourced from init kwargs, environment, .env and a YAML file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    aws_region: str = Field(default="us-east-1", validation_alias="REMOTE_AGENT_AWS_REGION")
    aws_profile: str | None = Field(default=None, validation_alias="REMOTE_AGENT_AWS_PROFILE")
    stack_name: str = Field(default="RemoteAgentStack", validation_alias="REMOTE_AGENT_STACK_NAME")

    bucket_name: str = Field(default="", validation_alias="REMOTE_AGENT_S3_BUCKET")
    cluster_name: str = Field(default="", validation_alias="REMOTE_AGENT_ECS_CLUSTER")
    task_definition_family: str = Field(default="", validation_alias="REMOTE_AGENT_TASK_FAMILY")
    container_name: str = Field(default="remote-agent", validation_alias="REMOTE_AGENT_CONTAINER_NAME")
    container_image_uri: str = Field(default="", validation_alias="REMOTE_AGENT_CONTAINER_IMAGE")
    subnet_ids: Annotated[tuple[str, ...], NoDecode] = Field(
        default=(), validation_alias="REMOTE_AGENT_SUBNET_IDS"
    )
    security_group_id: str = Field(default="", validation_alias="REMOTE_AGENT_SECURITY_GROUP_ID")
    log_group_name: str = Field(default=DEFAULT_LOG_GROUP, validation_alias="REMOTE_AGENT_LOG_GROUP")
    log_stream_prefix: str = Field(default="remote-agent", validation_alias="REMOTE_AGENT_LOG_STREAM_PREFIX")

    default_cpu: str = Field(default="1024", validation_alias="REMOTE_AGENT_DEFAULT_CPU")
    default_memory: str = Field(default="4096", validation_alias="REMOTE_AGENT_DEFAULT_MEMORY")
    default_timeout_seconds: int = Field(default=7200, validation_alias="REMOTE_AGENT_TIMEOUT_SECONDS")
    agent_model: str | None = Field(default=None, validation_alias="REMOTE_AGENT_MODEL")
    provider: str = Field(default="anthropic", validation_alias="REMOTE_AGENT_PROVIDER")
    auth_token: str | None = Field(default=None, validation_alias="REMOTE_AGENT_AUTH_TOKEN")
    max_workspace_mb: int = Field(default=500, validation_alias="REMOTE_AGENT_MAX_WORKSPACE_MB")

    metadata_poll_interval: float = Field(default=15.0, validation_alias="REMOTE_AGENT_METADATA_POLL_SECONDS")
    log_poll_interval: float = Field(default=20.0, validation_alias="REMOTE_AGENT_LOG_POLL_SECONDS")
    log_poll_offset: float = Field(default=2.5, validation_alias="REMOTE_AGENT_LOG_POLL_OFFSET_SECONDS")
    max_poll_duration: float = Field(default=12 * 60 * 60, validation_alias="REMOTE_AGENT_MAX_POLL_SECONDS")
    log_poll_lines: int = Field(default=50, validation_alias="REMOTE_AGENT_LOG_POLL_LINES")

    log_level: str = Field(default="INFO", validation_alias="REMOTE_AGENT_LOG_LEVEL")

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        yaml_file = Path(os.environ.get("REMOTE_AGENT_CONFIG_FILE", DEFAULT_CONFIG_FILE))
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            YamlConfigSettingsSource(settings_cls, yaml_file=yaml_file),
            file_secret_settings,
        )

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "REMOTE_AGENT_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator("subnet_ids", mode="before")
    @classmethod
    def _parse_subnet_ids(cls, value):
        if value is None or value == "":
            return ()
        if isinstance(value, (list, tuple)):
            return tuple(str(item).strip() for item in value if str(item).strip())
        if isinstance(value, str):
            return tuple(part.strip() for part in value.split(",") if part.strip())
        raise TypeError("REMOTE_AGENT_SUBNET_IDS must be a list or a comma-separated string")

    @field_validator("default_cpu", mode="before")
    @classmethod
    def _validate_cpu(cls, value: Any) -> str:
        normalized = str(value).strip()
        if normalized not in CPU_CHOICES:
            raise ValueError(f"REMOTE_AGENT_DEFAULT_CPU must be one of {', '.join(CPU_CHOICES)}")
        return normalized

    @field_validator("default_memory", mode="before")
    @classmethod
    def _validate_memory(cls, value: Any) -> str:
        normalized = str(value).strip()
        if normalized not in MEMORY_CHOICES:
            raise ValueError(
                f"REMOTE_AGENT_DEFAULT_MEMORY must be one of {', '.join(MEMORY_CHOICES)}"
            )
        return normalized

    @field_validator(
        "default_timeout_seconds",
        "metadata_poll_interval",
        "log_poll_interval",
        "max_poll_duration",
        "log_poll_lines",
        "max_workspace_mb",
    )
    @classmethod
    def _validate_positive(cls, value):
        if value <= 0:
            raise ValueError("Intervals, limits and timeouts must be > 0")
        return value

    @field_validator("log_poll_offset")
    @classmethod
    def _validate_offset(cls, value):
        if value < 0:
            raise ValueError("REMOTE_AGENT_LOG_POLL_OFFSET_SECONDS must be >= 0")
        return value

    @property
    def max_workspace_bytes(self) -> int:
        return self.max_workspace_mb * 1024 * 1024

    def missing_infrastructure(self) -> list[str]:
        """Return the names of infrastructure fields that are still empty."""

        return [name for name in INFRASTRUCTURE_FIELDS if not getattr(self, name)]

    def with_stack_outputs(self, outputs: dict[str, Any]) -> "RemoteAgentSettings":
        """Fill empty infrastructure fields from discovered stack outputs.

        Values already configured (env, YAML, init) always win.
        """

        update: dict[str, Any] = {}
        for key, value in outputs.items():
            if not value:
                continue
            if key == "log_group_name":
                if self.log_group_name == DEFAULT_LOG_GROUP:
                    update[key] = value
            elif key in INFRASTRUCTURE_FIELDS and not getattr(self, key):
                update[key] = value
        return self.model_copy(update=update)

    def boto_session(self) -> boto3.session.Session:
        return boto3.session.Session(profile_name=self.aws_profile, region_name=self.aws_region)


def discover_stack_outputs(
    settings: RemoteAgentSettings,
    *,
    client_factory: Callable[[], Any] | None = None,
) -> dict[str, Any]:
    """Read infrastructure names from the CloudFormation stack outputs.

    Returns an empty mapping when the stack is missing or not accessible.
    """

    factory = client_factory or (lambda: settings.boto_session().client("cloudformation"))
    try:
        response = factory().describe_stacks(StackName=settings.stack_name)
    except (ClientError, BotoCoreError) as exc:
        logger.warning(
            "CloudFormation stack not found or not accessible",
            extra={"stack_name": settings.stack_name, "error": str(exc)},
        )
        return {}

    stacks = response.get("Stacks") or []
    outputs = {
        item.get("OutputKey"): item.get("OutputValue")
        for item in (stacks[0].get("Outputs") or [] if stacks else [])
    }

    discovered: dict[str, Any] = {
        "bucket_name": outputs.get("BucketName"),
        "cluster_name": outputs.get("ClusterName"),
        "task_definition_family": outputs.get("TaskFamily"),
        "log_group_name": outputs.get("LogGroupName"),
        "container_image_uri": f"{outputs['RepositoryUri']}:latest" if outputs.get("RepositoryUri") else None,
        "subnet_ids": tuple(part for part in (outputs.get("SubnetIds") or "").split(",") if part),
        "security_group_id": outputs.get("SecurityGroupId"),
    }
    return {key: value for key, value in discovered.items() if value}


def resolve_infrastructure(
    settings: RemoteAgentSettings,
    *,
    client_factory: Callable[[], Any] | None = None,
) -> RemoteAgentSettings:
    """Return settings with missing infrastructure filled from the stack, if needed."""

    if not settings.missing_infrastructure():
        return settings
    return settings.with_stack_outputs(discover_stack_outputs(settings, client_factory=client_factory))


@lru_cache(maxsize=1)
def get_settings() -> RemoteAgentSettings:
    """Return cached settings instance."""

    return RemoteAgentSettings()


__all__ = [
    "CPU_CHOICES",
    "MEMORY_CHOICES",
    "RemoteAgentSettings",
    "discover_stack_outputs",
    "get_settings",
    "resolve_infrastructure",
]
