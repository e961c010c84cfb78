"""Condense an agent session's output into a one-line commit message."""

from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path
from typing import Any, Optional

from ..cancel import CancelToken
from ..config import AgentSettings
from ..constants import (
    DISTILL_INPUT_LIMIT,
    DISTILL_MODEL,
    DONE_COMMIT_MESSAGE,
    DONE_MARKER,
    FALLBACK_COMMIT_MESSAGE,
)
from ..parsing.agent_output import contains_marker, strip_markers
from .events import TextCollector
from .session import AgentClient, AgentError

logger = logging.getLogger(__name__)

DISTILL_PROMPT = """You are a commit message writer. Given the following development session output, write a concise git commit message.

Rules:
- Use conventional commit format if appropriate (feat:, fix:, refactor:, etc.)
- Keep the first line under 72 characters
- Be specific about what was changed
- Do not mention AI, Claude, automation, or robots
- Write as if a human developer made these changes

Session output:
{output}

Respond with only the commit message, nothing else."""


def clean_message(text: str) -> str:
    """Return the first non-blank line of ``text`` with markers removed."""
    for line in strip_markers(text).splitlines():
        line = line.strip().strip("`").strip()
        if line:
            return line
    return ""


class Distiller:
    """Ask a small model for a commit message describing one session.

    Any failure degrades to :data:`FALLBACK_COMMIT_MESSAGE`; only
    cancellation of the run escapes :meth:`distill`.

    Example:
        distiller = Distiller(settings=config.agent, cwd=project_dir)
        message = distiller.distill(session_output)
    """

    def __init__(
        self,
        client: Optional[Any] = None,
        *,
        settings: Optional[AgentSettings] = None,
        cwd: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if client is None:
            base = settings or AgentSettings()
            client = AgentClient(replace(base, model=DISTILL_MODEL, max_turns=1), cwd=cwd)
        self._client = client
        self._log = logger or logging.getLogger(__name__)

    def build_prompt(self, output: str) -> str:
        text = strip_markers(output).strip()
        if len(text) > DISTILL_INPUT_LIMIT:
            # The end of a session usually summarizes it.
            text = text[-DISTILL_INPUT_LIMIT:]
        return DISTILL_PROMPT.format(output=text)

    def distill(self, output: str, *, cancel_token: Optional[CancelToken] = None) -> str:
        """Return a commit message for ``output``.

        Raises:
            RunCancelledError: If ``cancel_token`` fired before the model started.
        """
        if not strip_markers(output or "").strip():
            return FALLBACK_COMMIT_MESSAGE
        if contains_marker(output, DONE_MARKER):
            return DONE_COMMIT_MESSAGE

        try:
            session = self._client.run(self.build_prompt(output), cancel_token=cancel_token)
        except AgentError as exc:
            self._log.warning("Commit message distillation failed to start: %s", exc)
            return FALLBACK_COMMIT_MESSAGE

        collector = TextCollector()
        for event in session.events():
            collector.add(event)
        message = clean_message(collector.text())
        error = session.wait()
        if error is not None:
            self._log.warning("Commit message distillation failed: %s", error)
        return message or FALLBACK_COMMIT_MESSAGE
