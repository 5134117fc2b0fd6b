"""Summaries of unified diffs and local application of task patches."""

from __future__ import annotations

import logging
import re
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_FILE_HEADER = re.compile(r"diff --git a/.+ b/(.+)")
APPLY_TIMEOUT_SECONDS = 30
ERROR_PREVIEW_LIMIT = 2000


def summarize_patch(patch: str) -> list[str]:
    """List ``"path (+A/-D)"`` for each file in ``patch``, in diff order."""

    files: list[str] = []
    current: str | None = None
    added = removed = 0

    for line in patch.splitlines():
        if line.startswith("diff --git"):
            if current is not None:
                files.append(f"{current} (+{added}/-{removed})")
            match = _FILE_HEADER.match(line)
            current = match.group(1) if match else "unknown"
            added = removed = 0
        elif line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1

    if current is not None:
        files.append(f"{current} (+{added}/-{removed})")
    return files


def patch_stats(patch: str) -> tuple[int, int]:
    """Return ``(line_count, byte_count)`` for a patch."""

    return len(patch.split("\n")), len(patch.encode("utf-8"))


def format_bytes(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{size / 1024:.1f} KB"
    return f"{size / (1024 * 1024):.1f} MB"


@dataclass(slots=True)
class PatchApplyResult:
    """Outcome of applying a task patch to a local checkout."""

    applied: bool
    patch_path: Path
    output: str = ""
    error: str | None = None
    hints: list[str] = field(default_factory=list)


def apply_patch(
    patch: str,
    directory: Path | str,
    task_id: str,
    *,
    scratch_dir: Path | None = None,
) -> PatchApplyResult:
    """Apply ``patch`` inside ``directory`` with ``git apply``.

    The patch is always saved to a file first so a failed application can be
    retried by hand.
    """

    target_dir = scratch_dir or Path(tempfile.gettempdir())
    patch_path = target_dir / f"remote-agent-{task_id[:8]}.patch"
    patch_path.write_text(patch, encoding="utf-8")

    outputs: list[str] = []
    for args in (["git", "apply", "--stat", str(patch_path)], ["git", "apply", str(patch_path)]):
        try:
            result = subprocess.run(
                args,
                cwd=Path(directory),
                capture_output=True,
                text=True,
                timeout=APPLY_TIMEOUT_SECONDS,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            return _failed(patch_path, str(exc), outputs)
        if result.returncode != 0:
            return _failed(patch_path, (result.stderr or result.stdout).strip(), outputs)
        if result.stdout.strip():
            outputs.append(result.stdout.strip())

    logger.info("Applied task patch", extra={"task_id": task_id, "directory": str(directory)})
    return PatchApplyResult(applied=True, patch_path=patch_path, output="\n".join(outputs))


def _failed(patch_path: Path, error: str, outputs: list[str]) -> PatchApplyResult:
    logger.warning("Failed to apply task patch", extra={"patch_path": str(patch_path)})
    return PatchApplyResult(
        applied=False,
        patch_path=patch_path,
        output="\n".join(outputs),
        error=error[:ERROR_PREVIEW_LIMIT],
        hints=[
            f'You can manually apply it with: git apply "{patch_path}"',
            f'Or try with --3way: git apply --3way "{patch_path}"',
        ],
    )


__all__ = [
    "PatchApplyResult",
    "apply_patch",
    "format_bytes",
    "patch_stats",
    "summarize_patch",
]
