"""Filter execution unit log lines down to progress milestones."""

from __future__ import annotations

import re
from typing import Iterable

_TIMESTAMP_PREFIX = re.compile(r"^\[.*?\]\s*")
_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")

MILESTONE_PREFIXES = (
    "=== ",
    "Changes detected:",
    "No file changes",
    "Using model:",
    "Workspace extracted:",
    "Auth written to",
    "Prompt loaded from store:",
)
ERROR_MARKER = "Error:"


def clean_log_line(line: str) -> str:
    """Drop the ``[timestamp]`` prefix and ANSI colour codes."""

    return _ANSI_ESCAPE.sub("", _TIMESTAMP_PREFIX.sub("", line, count=1)).strip()


def is_milestone(cleaned: str) -> bool:
    return cleaned.startswith(MILESTONE_PREFIXES) or ERROR_MARKER in cleaned


def extract_milestones(lines: Iterable[str]) -> list[str]:
    """Cleaned milestone lines in log order, without repeats."""

    seen: set[str] = set()
    milestones: list[str] = []
    for line in lines:
        cleaned = clean_log_line(line)
        if cleaned and is_milestone(cleaned) and cleaned not in seen:
            seen.add(cleaned)
            milestones.append(cleaned)
    return milestones


__all__ = ["MILESTONE_PREFIXES", "clean_log_line", "extract_milestones", "is_milestone"]
