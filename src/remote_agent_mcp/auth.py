"""Select the credentials forwarded to an execution unit."""

from __future__ import annotations

import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Literal, Mapping

from .config import RemoteAgentSettings

AuthFormat = Literal["opencode-auth", "env-vars"]

PROVIDER_ENV_VARS = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "github-copilot": "GITHUB_TOKEN",
    "groq": "GROQ_API_KEY",
    "gemini": "GEMINI_API_KEY",
}


class AuthError(RuntimeError):
    """Raised when no usable credentials can be found locally."""


@dataclass(slots=True)
class ContainerAuth:
    """Credential payload uploaded next to a task, plus its shape tag."""

    payload: str
    format: AuthFormat


def provider_env_var(provider: str) -> str:
    return PROVIDER_ENV_VARS.get(provider, "ANTHROPIC_API_KEY")


def default_auth_path(environ: Mapping[str, str] | None = None) -> Path:
    """Location of the agent CLI's ``auth.json`` (XDG data dir)."""

    environ = os.environ if environ is None else environ
    data_home = environ.get("XDG_DATA_HOME") or str(Path.home() / ".local" / "share")
    return Path(data_home) / "opencode" / "auth.json"


def _env_payload(name: str, value: str) -> ContainerAuth:
    return ContainerAuth(payload=json.dumps({name: value}), format="env-vars")


def resolve_container_auth(
    settings: RemoteAgentSettings,
    *,
    environ: Mapping[str, str] | None = None,
    auth_path: Path | None = None,
    now: float | None = None,
) -> ContainerAuth:
    """Pick credentials for the remote agent.

    Lookup order: ``ANTHROPIC_API_KEY``, ``OPENAI_API_KEY``, the configured
    auth token (mapped to the provider's variable), then the agent CLI's
    ``auth.json`` which is forwarded verbatim.
    """

    environ = os.environ if environ is None else environ
    for name in ("ANTHROPIC_API_KEY", "OPENAI_API_KEY"):
        if environ.get(name):
            return _env_payload(name, environ[name])
    if settings.auth_token:
        return _env_payload(provider_env_var(settings.provider), settings.auth_token)

    path = auth_path or default_auth_path(environ)
    if not path.exists():
        raise AuthError(
            "No authentication found. Options:\n"
            "  - Set ANTHROPIC_API_KEY or OPENAI_API_KEY environment variable\n"
            "  - Set REMOTE_AGENT_AUTH_TOKEN environment variable\n"
            "  - Run `opencode auth login` to authenticate via OAuth"
        )

    raw = path.read_text(encoding="utf-8")
    try:
        auth = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise AuthError(f"Failed to parse OpenCode auth file at {path}") from exc
    if not isinstance(auth, dict):
        raise AuthError(f"Failed to parse OpenCode auth file at {path}")

    provider = settings.provider
    entry = auth.get(provider)
    if not isinstance(entry, dict) or not entry.get("access"):
        raise AuthError(
            f'No "{provider}" credentials found in {path}. '
            "Run `opencode auth login` or set REMOTE_AGENT_PROVIDER to one of: "
            f"{', '.join(auth)}"
        )

    expires = entry.get("expires")
    current_ms = (time.time() if now is None else now) * 1000
    if isinstance(expires, (int, float)) and expires > 0 and current_ms > expires:
        raise AuthError(
            f'OAuth token for "{provider}" has expired. Run `opencode auth login` to refresh.'
        )

    return ContainerAuth(payload=raw, format="opencode-auth")


__all__ = [
    "AuthError",
    "AuthFormat",
    "ContainerAuth",
    "PROVIDER_ENV_VARS",
    "default_auth_path",
    "provider_env_var",
    "resolve_container_auth",
]
