"""Package a local directory into a workspace archive for upload."""

from __future__ import annotations

import logging
import os
import subprocess
import tarfile
import tempfile
from pathlib import Path
from typing import Iterable
from uuid import uuid4

logger = logging.getLogger(__name__)

# Skipped when the directory is not a git checkout.
FALLBACK_EXCLUDES = frozenset(
    {".git", ".hg", ".svn", "node_modules", ".next", "dist", "build", "__pycache__", ".venv"}
)


class WorkspaceError(RuntimeError):
    """Raised when the local workspace cannot be packaged."""


class WorkspaceTooLargeError(WorkspaceError):
    """Raised when the packaged workspace exceeds the upload limit."""

    def __init__(self, size: int, limit: int) -> None:
        self.size = size
        self.limit = limit
        super().__init__(
            f"Workspace tarball is {round(size / 1024 / 1024)}MB, exceeding the "
            f"{round(limit / 1024 / 1024)}MB limit. Consider using repo_url instead, "
            "or adding large files to .gitignore."
        )


def format_size(size: int) -> str:
    if size < 1024:
        return f"{size} B"
    if size < 1024 * 1024:
        return f"{round(size / 1024)} KB"
    return f"{size / 1024 / 1024:.1f} MB"


def _git_files(directory: Path) -> list[str] | None:
    """Tracked plus untracked-but-not-ignored files, or ``None`` outside git."""

    try:
        probe = subprocess.run(
            ["git", "rev-parse", "--is-inside-work-tree"],
            cwd=directory,
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError:
        return None
    if probe.returncode != 0:
        return None

    files: list[str] = []
    for extra in ([], ["--others", "--exclude-standard"]):
        result = subprocess.run(
            ["git", "ls-files", "-z", *extra],
            cwd=directory,
            capture_output=True,
            check=False,
        )
        if result.returncode != 0:
            raise WorkspaceError(
                f"git ls-files failed: {result.stderr.decode('utf-8', errors='replace').strip()}"
            )
        files.extend(name for name in result.stdout.decode("utf-8").split("\0") if name)
    return files


def _walk_files(directory: Path) -> list[str]:
    files: list[str] = []
    for root, dirs, names in os.walk(directory):
        dirs[:] = sorted(d for d in dirs if d not in FALLBACK_EXCLUDES)
        for name in sorted(names):
            files.append(os.path.relpath(os.path.join(root, name), directory))
    return files


def _write_archive(directory: Path, files: Iterable[str], destination: Path) -> None:
    with tarfile.open(destination, "w:gz") as archive:
        for name in files:
            path = directory / name
            # Deleted-but-tracked files are listed by git and skipped here.
            if path.is_file() or path.is_symlink():
                archive.add(path, arcname=name, recursive=False)


def package_workspace(
    directory: Path | str,
    *,
    max_bytes: int,
    scratch_dir: Path | None = None,
) -> Path:
    """Create a ``.tar.gz`` of ``directory`` and return its path.

    Inside a git checkout only tracked and untracked-but-not-ignored files
    are archived. The caller owns (and must delete) the returned file.
    """

    directory = Path(directory).expanduser().resolve()
    if not directory.is_dir() or str(directory) == directory.anchor:
        raise WorkspaceError(f"Cannot package workspace directory {directory}")

    files = _git_files(directory)
    if files is None:
        files = _walk_files(directory)

    target_dir = scratch_dir or Path(tempfile.gettempdir())
    archive_path = target_dir / f"workspace-{uuid4()}.tar.gz"
    try:
        _write_archive(directory, files, archive_path)
    except OSError as exc:
        archive_path.unlink(missing_ok=True)
        raise WorkspaceError(f"Failed to package workspace: {exc}") from exc

    size = archive_path.stat().st_size
    if size > max_bytes:
        archive_path.unlink(missing_ok=True)
        raise WorkspaceTooLargeError(size, max_bytes)

    logger.info(
        "Packaged workspace",
        extra={"directory": str(directory), "files": len(files), "size": format_size(size)},
    )
    return archive_path


__all__ = [
    "WorkspaceError",
    "WorkspaceTooLargeError",
    "format_size",
    "package_workspace",
]
