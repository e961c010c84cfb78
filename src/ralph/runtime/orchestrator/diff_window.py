"""Compute the diff the reviewer sees and keep it under a byte ceiling."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from ...constants import DEFAULT_MAX_DIFF_BYTES
from ..vcs.jj import VcsError

logger = logging.getLogger(__name__)

SINGLE_CHANGE_CAVEAT = (
    "NOTE: The base revision for this plan is unavailable, so this diff only covers the "
    "current change, not everything changed since the plan started. Use `jj log` and "
    "`jj show <change-id>` to inspect earlier changes.\n\n"
)

# Room left for the omission notice so truncated output is always shorter than the input.
_NOTICE_RESERVE = 128


class DiffSource(Protocol):
    def diff(self, from_rev: Optional[str] = None, to_rev: Optional[str] = None) -> str: ...

    def show_current_change(self) -> str: ...


def truncate_diff(diff: str, max_bytes: int = DEFAULT_MAX_DIFF_BYTES) -> str:
    """Cap ``diff`` at ``max_bytes`` of UTF-8, appending an omission notice.

    The cut lands on the last line boundary when that boundary is at or past
    the midpoint of the kept region; otherwise it is a plain byte cut.

    Raises:
        ValueError: If ``diff`` must be cut and ``max_bytes`` leaves no room
            for the notice.
    """
    data = diff.encode("utf-8")
    if len(data) <= max_bytes:
        return diff
    if max_bytes <= _NOTICE_RESERVE:
        raise ValueError(f"max_bytes must be greater than {_NOTICE_RESERVE}")
    budget = max_bytes - _NOTICE_RESERVE
    kept = data[:budget]
    newline = kept.rfind(b"\n")
    if newline != -1 and newline >= budget // 2:
        kept = kept[: newline + 1]
    omitted = len(data) - len(kept)
    text = kept.decode("utf-8", errors="ignore")
    if not text.endswith("\n"):
        text += "\n"
    return f"{text}\n... [diff truncated: {omitted} bytes omitted] ..."


def build_review_diff(
    vcs: DiffSource,
    base_revision: Optional[str],
    *,
    max_bytes: int = DEFAULT_MAX_DIFF_BYTES,
    log: Optional[logging.Logger] = None,
) -> str:
    """Return the cumulative diff since ``base_revision``, truncated.

    Without a usable base revision, fall back to the current change's diff
    (then ``jj show``) behind :data:`SINGLE_CHANGE_CAVEAT`. VCS failures
    degrade to an empty string rather than raising.
    """
    log = log or logger
    if base_revision:
        try:
            return truncate_diff(vcs.diff(base_revision, "@"), max_bytes)
        except VcsError as exc:
            log.warning("Cumulative diff from %s failed, using current change: %s", base_revision, exc)

    content = ""
    try:
        content = vcs.diff()
    except VcsError as exc:
        log.warning("Current-change diff failed: %s", exc)
    if not content.strip():
        try:
            content = vcs.show_current_change()
        except VcsError as exc:
            log.warning("Showing current change failed: %s", exc)
            content = ""
    if not content.strip():
        return ""
    return truncate_diff(SINGLE_CHANGE_CAVEAT + content, max_bytes)
