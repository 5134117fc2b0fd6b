from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from remote_agent_mcp.patch import apply_patch, format_bytes, patch_stats, summarize_patch

TWO_FILE_DIFF = """diff --git a/a.txt b/a.txt
index 1111111..2222222 100644
--- a/a.txt
+++ b/a.txt
@@ -1,2 +1,3 @@
-old line
+new line
+another line
 unchanged
diff --git a/b.txt b/b.txt
index 3333333..4444444 100644
--- a/b.txt
+++ b/b.txt
@@ -1,3 +0,0 @@
-one
-two
-three
"""


def test_summarize_patch_counts_per_file_in_order() -> None:
    assert summarize_patch(TWO_FILE_DIFF) == ["a.txt (+2/-1)", "b.txt (+0/-3)"]


def test_summarize_patch_empty_input() -> None:
    assert summarize_patch("") == []


def test_summarize_patch_uses_destination_path_for_renames() -> None:
    diff = "diff --git a/old/name.py b/new/name.py\nsimilarity index 90%\n+x\n"
    assert summarize_patch(diff) == ["new/name.py (+1/-0)"]


def test_summarize_patch_strips_carriage_returns() -> None:
    diff = "diff --git a/win.txt b/win.txt\r\n--- a/win.txt\r\n+++ b/win.txt\r\n-old\r\n+new\r\n"
    assert summarize_patch(diff) == ["win.txt (+1/-1)"]


def test_patch_stats_and_byte_formatting() -> None:
    lines, size = patch_stats("a\nb\n")
    assert (lines, size) == (3, 4)
    assert format_bytes(512) == "512 B"
    assert format_bytes(2048) == "2.0 KB"
    assert format_bytes(3 * 1024 * 1024) == "3.0 MB"


def _git(*args: str, cwd: Path) -> str:
    return subprocess.run(
        ["git", "-c", "user.name=t", "-c", "user.email=t@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    ).stdout


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_apply_patch_success_and_failure(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _git("init", "-q", cwd=repo)
    (repo / "a.txt").write_text("old line\nunchanged\n", encoding="utf-8")
    _git("add", "-A", cwd=repo)
    _git("commit", "-q", "-m", "base", cwd=repo)
    (repo / "a.txt").write_text("new line\nunchanged\n", encoding="utf-8")
    patch = _git("diff", cwd=repo)
    _git("checkout", "--", "a.txt", cwd=repo)

    scratch = tmp_path / "scratch"
    scratch.mkdir()
    task_id = "12345678-aaaa-4bbb-8ccc-1234567890ab"
    result = apply_patch(patch, repo, task_id, scratch_dir=scratch)

    assert result.applied
    assert result.error is None
    assert result.patch_path == scratch / "remote-agent-12345678.patch"
    assert (repo / "a.txt").read_text(encoding="utf-8").startswith("new line")

    # Applying the same patch twice fails and points at the saved copy.
    again = apply_patch(patch, repo, task_id, scratch_dir=scratch)
    assert not again.applied
    assert again.error
    assert again.patch_path.exists()
    assert any("--3way" in hint for hint in again.hints)
