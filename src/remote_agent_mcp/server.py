"""FastMCP server bootstrap for the remote agent controller."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from fastmcp import FastMCP

from . import __version__
from .config import RemoteAgentSettings, get_settings, resolve_infrastructure
from .context import RemoteAgentContext
from .tools import register_tools


def configure_logging(level: str) -> None:
    """Configure root logging for the controller."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def build_context(settings: RemoteAgentSettings, *, workspace_dir: Path | None = None) -> RemoteAgentContext:
    """Fill missing infrastructure from the deployed stack and wire the real clients."""

    resolved = resolve_infrastructure(settings)
    missing = resolved.missing_infrastructure()
    if missing:
        logging.getLogger(__name__).warning(
            "Remote agent infrastructure is incomplete; launches will fail until it is configured",
            extra={"missing": missing, "stack_name": resolved.stack_name},
        )
    return RemoteAgentContext.build(resolved, workspace_dir=workspace_dir)


def create_server(
    settings: Optional[RemoteAgentSettings] = None,
    *,
    context: RemoteAgentContext | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server with the remote agent tools."""

    app = context or build_context(settings or get_settings())
    settings = app.settings

    server = FastMCP(
        name="Remote Agent MCP",
        instructions=(
            "Offload long-running coding tasks to ephemeral remote containers. Launch with "
            "remote_run, follow progress with remote_events, inspect and apply results with "
            "remote_status."
        ),
    )

    handles = register_tools(server, app=app)

    def status_resource() -> str:
        """Return a JSON string summarizing configuration and tracking state."""

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "aws": {
                "region": settings.aws_region,
                "profile": settings.aws_profile,
                "stack_name": settings.stack_name,
            },
            "infrastructure": {
                "bucket": settings.bucket_name,
                "cluster": settings.cluster_name,
                "task_family": settings.task_definition_family,
                "log_group": settings.log_group_name,
                "missing": settings.missing_infrastructure(),
            },
            "defaults": {
                "cpu": settings.default_cpu,
                "memory": settings.default_memory,
                "timeout_seconds": settings.default_timeout_seconds,
                "model": settings.agent_model,
            },
            "tracking": {
                "active_count": app.tracker.active_count,
                "task_ids": app.tracker.tracked_ids(),
            },
        }
        return json.dumps(payload)

    server.resource(
        "resource://remote-agent/status",
        name="remote_agent_status",
        description="Provides the current runtime status of the remote agent controller.",
        mime_type="application/json",
    )(status_resource)

    setattr(server, "app_context", app)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_resource", status_resource)
    return server


def main() -> None:
    """Entry point for running the remote agent MCP server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    app: RemoteAgentContext = getattr(server, "app_context")
    logging.getLogger(__name__).info(
        "Launching remote agent MCP server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "bucket": app.settings.bucket_name,
            "cluster": app.settings.cluster_name,
        },
    )
    try:
        server.run()
    finally:
        app.tracker.stop_all()


if __name__ == "__main__":
    main()
