"""Compose the remote prompt from local session context."""

from __future__ import annotations

from typing import Callable, Optional

# Returns a condensed transcript of the given session, or None when unavailable.
ContextProvider = Callable[[Optional[str]], Optional[str]]


def build_remote_prompt(session_context: str, prompt: str) -> str:
    """Wrap the user's task in the context of the local session."""

    return "\n".join(
        [
            "<session-context>",
            "You are continuing a coding session that was started locally. "
            "Here is the context of what happened so far:",
            "",
            session_context,
            "</session-context>",
            "",
            "<task>",
            prompt,
            "</task>",
            "",
            "<instructions>",
            "- Your workspace at /workspace/repo contains the exact codebase state from the "
            "local session, including any uncommitted changes.",
            "- Complete the task described above.",
            "- All file changes you make will be automatically captured as a git patch and "
            "sent back to the user.",
            "- Focus on making the requested changes. Be thorough and complete.",
            "- If the task requires running tests or builds, do so and report the results.",
            "</instructions>",
        ]
    )


__all__ = ["ContextProvider", "build_remote_prompt"]
