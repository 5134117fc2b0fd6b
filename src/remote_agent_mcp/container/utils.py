"""Process helpers for the execution unit."""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from typing import Mapping

_SANITIZED_VARS = {
    "PYTHONHOME",
    "PYTHONPATH",
    "VIRTUAL_ENV",
    "PIP_RESPECT_VIRTUALENV",
}

# Commits made by the unit itself (baseline snapshots).
GIT_IDENTITY = {
    "GIT_AUTHOR_NAME": "remote-agent",
    "GIT_AUTHOR_EMAIL": "remote-agent@localhost",
    "GIT_COMMITTER_NAME": "remote-agent",
    "GIT_COMMITTER_EMAIL": "remote-agent@localhost",
}


class GitCommandError(RuntimeError):
    """Raised when a git invocation exits non-zero."""


def sanitize_environment(additional: Mapping[str, str] | None = None) -> dict[str, str]:
    """Return the current environment without the unit's own Python settings."""

    env = dict(os.environ)
    for key in _SANITIZED_VARS:
        env.pop(key, None)
    if additional:
        env.update(additional)
    return env


def run_git(*args: str, cwd: Path) -> str:
    """Run ``git`` in ``cwd`` and return its raw stdout."""

    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        encoding="utf-8",
        errors="replace",
        env=sanitize_environment(GIT_IDENTITY),
        check=False,
    )
    if result.returncode != 0:
        raise GitCommandError(f"git {args[0]} failed: {result.stderr.strip()}")
    return result.stdout


__all__ = ["GIT_IDENTITY", "GitCommandError", "run_git", "sanitize_environment"]
