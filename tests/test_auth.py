from __future__ import annotations

import json
from pathlib import Path

import pytest

from remote_agent_mcp.auth import AuthError, default_auth_path, resolve_container_auth


def _write_auth(path: Path, payload: dict) -> str:
    path.parent.mkdir(parents=True, exist_ok=True)
    raw = json.dumps(payload)
    path.write_text(raw, encoding="utf-8")
    return raw


def test_env_api_key_takes_precedence(settings, tmp_path: Path) -> None:
    auth = resolve_container_auth(
        settings,
        environ={"ANTHROPIC_API_KEY": "sk-ant", "OPENAI_API_KEY": "sk-oai"},
        auth_path=tmp_path / "missing.json",
    )
    assert auth.format == "env-vars"
    assert json.loads(auth.payload) == {"ANTHROPIC_API_KEY": "sk-ant"}


def test_auth_token_maps_to_provider_variable(settings, tmp_path: Path) -> None:
    configured = settings.model_copy(update={"auth_token": "tok", "provider": "groq"})

    auth = resolve_container_auth(configured, environ={}, auth_path=tmp_path / "missing.json")

    assert json.loads(auth.payload) == {"GROQ_API_KEY": "tok"}


def test_auth_file_is_forwarded_verbatim(settings, tmp_path: Path) -> None:
    path = tmp_path / "auth.json"
    raw = _write_auth(path, {"anthropic": {"type": "oauth", "access": "a", "expires": 2_000_000_000_000}})

    auth = resolve_container_auth(settings, environ={}, auth_path=path, now=1_700_000_000)

    assert auth.format == "opencode-auth"
    assert auth.payload == raw


def test_expired_token_is_rejected(settings, tmp_path: Path) -> None:
    path = tmp_path / "auth.json"
    _write_auth(path, {"anthropic": {"access": "a", "expires": 1_000}})

    with pytest.raises(AuthError, match="expired"):
        resolve_container_auth(settings, environ={}, auth_path=path, now=1_700_000_000)


def test_missing_provider_entry_lists_available(settings, tmp_path: Path) -> None:
    path = tmp_path / "auth.json"
    _write_auth(path, {"openai": {"access": "a"}})

    with pytest.raises(AuthError, match="openai"):
        resolve_container_auth(settings, environ={}, auth_path=path)


def test_unparseable_and_absent_auth(settings, tmp_path: Path) -> None:
    path = tmp_path / "auth.json"
    path.write_text("{oops", encoding="utf-8")
    with pytest.raises(AuthError, match="Failed to parse"):
        resolve_container_auth(settings, environ={}, auth_path=path)

    with pytest.raises(AuthError, match="No authentication found"):
        resolve_container_auth(settings, environ={}, auth_path=tmp_path / "absent.json")


def test_default_auth_path_honours_xdg(tmp_path: Path) -> None:
    assert default_auth_path({"XDG_DATA_HOME": str(tmp_path)}) == tmp_path / "opencode" / "auth.json"
