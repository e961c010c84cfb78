"""Extract progress, learnings and completion signals from free-form agent output.

Agents are asked to answer with ``## Progress`` / ``## Learnings`` /
``## Status`` sections, but they do not always comply. Parsing here is
lenient: headers are matched case-insensitively, headers inside fenced code
blocks are ignored, and output with no recognizable section is kept whole as
progress.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import ClassVar, Literal, Optional, Union

from ..constants import (
    COMPLETION_MARKERS,
    DEV_DONE_MARKER,
    DONE_MARKER,
    ISSUE_HEADERS,
    LEARNINGS_HEADER,
    PROGRESS_HEADER,
    REVIEWER_APPROVED_MARKER,
    REVIEWER_FEEDBACK_PREFIX,
    STATUS_HEADER,
    VERDICT_HEADER,
)

logger = logging.getLogger(__name__)

AgentRole = Literal["developer", "reviewer"]

_FENCE = "```"
_FEEDBACK_LINE = re.compile(r"^[ \t]*" + re.escape(REVIEWER_FEEDBACK_PREFIX), re.MULTILINE)
_HEADER_LINE = re.compile(r"^#+[ \t]", re.MULTILINE)
_MARKER_PATTERNS = tuple(re.compile(re.escape(marker) + "!*") for marker in COMPLETION_MARKERS)


@dataclass(frozen=True)
class ParseResult:
    """Sections and the generic done flag extracted from one turn's output.

    Attributes:
        raw: The text that was parsed, unchanged.
        progress: Body of the Progress section, or the whole trimmed text when
            no section header was found.
        learnings: Body of the Learnings section.
        status: Body of the Status section.
        is_done: Whether the generic done marker was emitted.
        malformed: True when no section header was found at all.
    """

    role: ClassVar[Optional[str]] = None
    raw: str = ""
    progress: str = ""
    learnings: str = ""
    status: str = ""
    is_done: bool = False
    malformed: bool = False


@dataclass(frozen=True)
class DeveloperParseResult(ParseResult):
    role: ClassVar[Optional[str]] = "developer"
    dev_done: bool = False

    @property
    def signalled_done(self) -> bool:
        """Developer-specific marker, or the generic one for single-marker agents."""
        return self.dev_done or self.is_done


@dataclass(frozen=True)
class ReviewerParseResult(ParseResult):
    role: ClassVar[Optional[str]] = "reviewer"
    verdict: str = ""
    approved: bool = False
    feedback: str = ""


AnyParseResult = Union[ParseResult, DeveloperParseResult, ReviewerParseResult]


def mask_code_blocks(text: str) -> str:
    """Blank out the inside of fenced code blocks, keeping length and newlines.

    A fence counts only at the start of a line. The fence lines themselves are
    kept; an unterminated fence masks everything to the end of the text.
    """
    chars = list(text)
    length = len(text)
    i = 0
    while i < length:
        at_line_start = i == 0 or text[i - 1] == "\n"
        if not (at_line_start and text.startswith(_FENCE, i)):
            i += 1
            continue
        # Skip the opening fence line, including any language tag.
        eol = text.find("\n", i)
        start = length if eol == -1 else eol + 1
        j = start
        close = -1
        while j < length:
            if (j == 0 or text[j - 1] == "\n") and text.startswith(_FENCE, j):
                close = j
                break
            j += 1
        end = length if close == -1 else close
        for k in range(start, end):
            if chars[k] != "\n":
                chars[k] = " "
        if close == -1:
            break
        eol = text.find("\n", close)
        i = length if eol == -1 else eol
    return "".join(chars)


def extract_section(text: str, header: str) -> tuple[str, bool]:
    """Return the trimmed body under ``header`` and whether the header exists.

    The body runs from the line after the header to the next line starting
    with ``##`` (outside code blocks) or to the end of the text.

    Args:
        text (str): Agent output to search.
        header (str): Header text such as ``"## Progress"``; matched case-insensitively.

    Returns:
        tuple[str, bool]: Section content (possibly empty) and a found flag.
    """
    masked = mask_code_blocks(text)
    match = re.search(re.escape(header), masked, re.IGNORECASE)
    if match is None:
        return "", False
    newline = text.find("\n", match.end())
    if newline == -1:
        return "", True
    start = newline + 1
    masked_rest = masked[start:]
    next_header = masked_rest.find("\n##")
    if next_header == -1:
        if masked_rest.startswith("##"):
            return "", True
        return text[start:].strip(), True
    if masked_rest.startswith("##"):
        return "", True
    return text[start : start + next_header].strip(), True


def contains_marker(text: str, marker: str) -> bool:
    """Whether ``marker`` occurs in ``text`` without another ``!`` right after it."""
    start = 0
    while True:
        idx = text.find(marker, start)
        if idx == -1:
            return False
        after = idx + len(marker)
        if after >= len(text) or text[after] != "!":
            return True
        start = idx + 1


def contains_done_marker(text: str) -> bool:
    return contains_marker(text, DONE_MARKER)


def strip_markers(text: str) -> str:
    """Remove every completion marker so it cannot leak into stored notes.

    Applying this twice gives the same result as applying it once.
    """
    current = text or ""
    while True:
        stripped = current
        for pattern in _MARKER_PATTERNS:
            stripped = pattern.sub("", stripped)
        if stripped == current:
            break
        current = stripped
    return current.strip()


def _signalled(marker: str, sections: tuple[tuple[str, bool], ...], whole: str) -> bool:
    for content, found in sections:
        if found and contains_marker(content, marker):
            return True
    return contains_marker(whole, marker)


def parse(text: str) -> ParseResult:
    """Parse output without role-specific signals."""
    raw = text or ""
    trimmed = raw.strip()
    progress, found_progress = extract_section(raw, PROGRESS_HEADER)
    learnings, found_learnings = extract_section(raw, LEARNINGS_HEADER)
    status, found_status = extract_section(raw, STATUS_HEADER)

    malformed = not (found_progress or found_learnings or found_status)
    if malformed and trimmed:
        logger.warning(
            "Malformed agent output: no sections found, treating as progress (length=%d)",
            len(raw),
        )
        progress = trimmed

    return ParseResult(
        raw=raw,
        progress=progress,
        learnings=learnings,
        status=status,
        is_done=_signalled(DONE_MARKER, ((status, found_status),), trimmed),
        malformed=malformed and bool(trimmed),
    )


def _reviewer_feedback(raw: str, masked: str) -> str:
    match = _FEEDBACK_LINE.search(masked)
    if match is not None:
        start = match.end()
        header = _HEADER_LINE.search(masked, start)
        body = raw[start:] if header is None else raw[start : header.start()]
        body = body.strip()
        if body:
            return body

    issues: list[str] = []
    for header in ISSUE_HEADERS:
        content, found = extract_section(raw, header)
        if found and content and content != "None":
            issues.append(f"{header}\n{content}")
    if issues:
        return "\n\n".join(issues)
    return raw.strip()


def parse_agent_output(text: str, role: AgentRole) -> AnyParseResult:
    """Parse output with the completion signals of ``role``.

    Args:
        text (str): Collected text of one agent turn.
        role (AgentRole): ``"developer"`` or ``"reviewer"``.

    Returns:
        AnyParseResult: A :class:`DeveloperParseResult` or :class:`ReviewerParseResult`.

    Raises:
        ValueError: If ``role`` is not a known role.
    """
    base = parse(text)
    trimmed = base.raw.strip()
    status_section = extract_section(base.raw, STATUS_HEADER)

    if role == "developer":
        return DeveloperParseResult(
            raw=base.raw,
            progress=base.progress,
            learnings=base.learnings,
            status=base.status,
            is_done=base.is_done,
            malformed=base.malformed,
            dev_done=_signalled(DEV_DONE_MARKER, (status_section,), trimmed),
        )

    if role == "reviewer":
        verdict, found_verdict = extract_section(base.raw, VERDICT_HEADER)
        approved = _signalled(REVIEWER_APPROVED_MARKER, ((verdict, found_verdict), status_section), trimmed)
        feedback = ""
        if not approved:
            feedback = _reviewer_feedback(base.raw, mask_code_blocks(base.raw))
        return ReviewerParseResult(
            raw=base.raw,
            progress=base.progress,
            learnings=base.learnings,
            status=base.status,
            is_done=base.is_done,
            malformed=base.malformed,
            verdict=verdict,
            approved=approved,
            feedback=feedback,
        )

    raise ValueError(f"unknown agent role: {role!r}")
