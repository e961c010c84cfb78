"""Prompt template loader and builders for agent turns."""

from __future__ import annotations

from pathlib import Path

_DIR = Path(__file__).parent
_cache: dict[str, str] = {}

NO_PROGRESS = "No progress yet."
NO_LEARNINGS = "No learnings yet."
NO_DEVELOPER_SUMMARY = "No developer summary available."
NO_DIFF = (
    "No code changes to review. The developer finished this pass without modifying any files. "
    "Check the Developer Summary above to confirm the developer's conclusions hold."
)
_RULE = "---"


def load(name: str) -> str:
    """Load a prompt template by file name (e.g. 'developer.md')."""
    if name not in _cache:
        _cache[name] = (_DIR / name).read_text(encoding="utf-8").strip()
    return _cache[name]


def _instructions(name: str) -> str:
    return load(name).replace("{vcs}", load("_vcs.md"))


def _or(value: str | None, fallback: str) -> str:
    text = str(value or "")
    return text if text.strip() else fallback


def _require_plan(plan: str) -> str:
    if not str(plan or "").strip():
        raise ValueError("plan content cannot be empty")
    return plan


def _history(parts: list[str], progress: str | None, learnings: str | None) -> None:
    parts += [_RULE, "", "# Progress So Far", "", _or(progress, NO_PROGRESS), ""]
    parts += [_RULE, "", "# Learnings So Far", "", _or(learnings, NO_LEARNINGS)]


def build_developer_prompt(
    plan: str,
    progress: str | None = None,
    learnings: str | None = None,
    feedback: str | None = None,
    *,
    team_mode: bool = False,
) -> str:
    """Render the developer turn prompt.

    Reviewer feedback, when present, is embedded verbatim under a section the
    developer is told to address.

    Raises:
        ValueError: If ``plan`` is empty or whitespace.
    """
    parts = [_instructions("developer.md"), ""]
    if team_mode:
        parts += [load("team.md"), ""]
    parts += [_RULE, "", "# Plan", "", _require_plan(plan), ""]
    _history(parts, progress, learnings)
    if str(feedback or "").strip():
        parts += [
            "",
            _RULE,
            "",
            "# Reviewer Feedback (from last review - MUST ADDRESS)",
            "",
            "The reviewer rejected your previous work. Address every issue below:",
            "",
            str(feedback),
        ]
    return "\n".join(parts)


def build_reviewer_prompt(
    plan: str,
    progress: str | None = None,
    learnings: str | None = None,
    diff: str | None = None,
    developer_summary: str | None = None,
    developer_done: bool = False,
) -> str:
    """Render the reviewer turn prompt around the diff under review.

    Raises:
        ValueError: If ``plan`` is empty or whitespace.
    """
    parts = [_instructions("reviewer.md"), ""]
    parts += [_RULE, "", "# Plan (for context)", "", _require_plan(plan), ""]
    _history(parts, progress, learnings)
    parts += ["", _RULE, "", "# Developer Summary", ""]
    if developer_done:
        parts += ["The developer reports the plan as complete.", ""]
    parts.append(_or(developer_summary, NO_DEVELOPER_SUMMARY))
    parts += ["", _RULE, "", "# Diff to Review", ""]
    if str(diff or "").strip():
        parts += ["```diff", str(diff), "```"]
    else:
        parts.append(NO_DIFF)
    return "\n".join(parts)


def build_single_prompt(plan: str, progress: str | None = None, learnings: str | None = None) -> str:
    """Render the prompt for the single-agent flow.

    Raises:
        ValueError: If ``plan`` is empty or whitespace.
    """
    parts = [_instructions("single.md"), ""]
    parts += [_RULE, "", "# Plan", "", _require_plan(plan), ""]
    _history(parts, progress, learnings)
    return "\n".join(parts)
