"""Shared constants for markers, thresholds, and runtime defaults."""

from __future__ import annotations

STATE_DIR_NAME = ".ralph"

# Completion markers emitted by agents.
DONE_MARKER = "DONE DONE DONE!!!"
DEV_DONE_MARKER = "DEV_DONE DEV_DONE DEV_DONE!!!"
REVIEWER_APPROVED_MARKER = "REVIEWER_APPROVED REVIEWER_APPROVED!!!"
REVIEWER_FEEDBACK_PREFIX = "REVIEWER_FEEDBACK:"
RUNNING_MARKER = "RUNNING RUNNING RUNNING"

COMPLETION_MARKERS = (DEV_DONE_MARKER, REVIEWER_APPROVED_MARKER, DONE_MARKER)

# Section headers searched in agent output.
PROGRESS_HEADER = "## Progress"
LEARNINGS_HEADER = "## Learnings"
STATUS_HEADER = "## Status"
VERDICT_HEADER = "### Verdict"
ISSUE_HEADERS = ("### Critical Issues", "### Major Issues", "### Minor Issues")

# Tools whose use means the developer touched files during a turn.
EDIT_TOOL_NAMES = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit"})

DEFAULT_AGENT_COMMAND = "claude"
DEFAULT_MAX_ITERATIONS = 15
DEFAULT_EVENT_BUFFER_SIZE = 10000
SESSION_EVENT_BUFFER_SIZE = 1000
DEFAULT_MAX_DIFF_BYTES = 100_000
MIN_DIFF_BYTES = 1024

# Extended mode grants this many iterations after the first agreement.
EXTENDED_MODE_EXTRA_ITERATIONS = 3

# Pause after an iteration fails before starting the next one.
DEFAULT_ERROR_BACKOFF_SECONDS = 2.0

CONTEXT_LIMIT_PERCENT = 50.0
DEFAULT_CONTEXT_WINDOW = 200_000

TEAM_MODE_ENV = {"CLAUDE_CODE_EXPERIMENTAL_AGENT_TEAMS": "1"}
SESSION_ID_ENV_VAR = "RALPH_SESSION_ID"

# Commit messages for single-flow iterations.
DISTILL_MODEL = "haiku"
DISTILL_INPUT_LIMIT = 20_000
FALLBACK_COMMIT_MESSAGE = "Update implementation"
DONE_COMMIT_MESSAGE = "Complete implementation"
